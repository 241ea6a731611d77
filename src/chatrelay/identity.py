from __future__ import annotations

from fastapi import Request

ANONYMOUS = ""


def caller_identity(request: Request) -> str:
    """Caller id set by the authentication layer in front of this service.

    Credentials are not verified here; the id is only used to authorize stop
    commands. A missing header means the anonymous caller.
    """
    header = request.app.state.services.config.identity_header
    return (request.headers.get(header) or ANONYMOUS).strip()
