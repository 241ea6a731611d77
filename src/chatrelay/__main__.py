from __future__ import annotations

import uvicorn

from chatrelay.config import Settings
from chatrelay.gateway import create_app
from chatrelay.logging import configure_logging


def main() -> None:
    settings = Settings()
    configure_logging(level=settings.log_level, json_output=settings.log_json)
    app = create_app(settings.to_gateway_config())
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
