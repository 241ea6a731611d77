from __future__ import annotations


class RelayError(Exception):
    """Base class for errors raised inside the streaming relay."""

    # set once the failing request has been registered
    request_id: str | None = None


class UpstreamError(RelayError):
    """The language-model provider failed or could not be reached."""

    def __init__(self, status_code: int | None, body: str = "") -> None:
        self.status_code = status_code
        self.body = body
        if status_code is None:
            message = f"upstream unavailable: {body}" if body else "upstream unavailable"
        else:
            message = f"upstream returned HTTP {status_code}"
            if body:
                message = f"{message}: {body}"
        super().__init__(message)


class RequestCancelled(RelayError):
    """Raised at a suspension point once the request's cancel signal fired."""

    def __init__(self, reason: str = "stopped") -> None:
        self.reason = reason
        super().__init__(f"request cancelled ({reason})")


class DownstreamClosed(RelayError):
    pass


class DuplicateRequestError(RelayError):
    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        super().__init__(f"request_id {request_id!r} is already registered or retired")


class RegistryConflictError(RelayError):
    pass
