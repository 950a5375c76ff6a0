"""Business-rule failures raised by the service layer.

Each error is an HTTPException carrying a structured detail
``{"error": CODE, "message": ..., **context}`` so routers can let them
propagate untouched and clients can tell them apart without parsing text.
"""

from typing import Any

from fastapi import HTTPException


class DispatchError(HTTPException):
    http_status = 400
    code = "ERROR"

    def __init__(self, message: str, *, code: str | None = None, **context: Any):
        detail: dict[str, Any] = {"error": code or self.code, "message": message}
        detail.update({k: v for k, v in context.items() if v is not None})
        super().__init__(status_code=self.http_status, detail=detail)
        self.message = message

    def __str__(self) -> str:
        return f"{self.detail['error']}: {self.message}"


class ValidationError(DispatchError):
    http_status = 422
    code = "VALIDATION_ERROR"


class NotFound(DispatchError):
    http_status = 404
    code = "NOT_FOUND"


class Conflict(DispatchError):
    http_status = 409
    code = "STATE_CHANGED"


class IllegalTransition(DispatchError):
    http_status = 409
    code = "ILLEGAL_TRANSITION"


class NotAuthorized(DispatchError):
    http_status = 403
    code = "NOT_AUTHORIZED"


class AlreadyActive(DispatchError):
    http_status = 409
    code = "ALREADY_ACTIVE"


class NoDriversAvailable(DispatchError):
    http_status = 503
    code = "NO_DRIVERS_AVAILABLE"


class Unavailable(DispatchError):
    http_status = 503
    code = "UNAVAILABLE"


class Timeout(Unavailable):
    http_status = 504
    code = "TIMEOUT"
