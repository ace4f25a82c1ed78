from __future__ import annotations

from typing import Any, Optional


class ServiceError(Exception):
    """Domain failure raised by services and rendered by the API layer."""

    status_code = 400
    code = "invalid_request"

    def __init__(self, message: str, *, code: Optional[str] = None, details: Optional[Any] = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details


class ValidationFailed(ServiceError):
    status_code = 400
    code = "validation_failed"


class PermissionDenied(ServiceError):
    status_code = 403
    code = "forbidden"


class NotFound(ServiceError):
    status_code = 404
    code = "not_found"


class Conflict(ServiceError):
    status_code = 409
    code = "conflict"
