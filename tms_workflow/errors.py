"""Error taxonomy shared by the workflow services and the API layer."""
from __future__ import annotations

from typing import Optional


class TMSError(Exception):
    """Base class for all domain errors raised by the workflow core."""

    status_code = 500
    error_code = "internal_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"detail": self.message, "error": self.error_code}


class ValidationError(TMSError):
    """Bad input shape or missing required field. Never retried."""

    status_code = 400
    error_code = "validation_error"


class ForbiddenError(TMSError):
    """The actor lacks the required relationship to the project."""

    status_code = 403
    error_code = "forbidden"


class NotFoundError(TMSError):
    """A segment, file, project or job does not exist."""

    status_code = 404
    error_code = "not_found"


class PreconditionError(TMSError):
    """The current status does not permit the requested transition."""

    status_code = 409
    error_code = "precondition_failed"

    def __init__(self, message: str, current_status: Optional[str] = None) -> None:
        super().__init__(message)
        self.current_status = current_status

    def to_dict(self) -> dict:
        payload = super().to_dict()
        if self.current_status is not None:
            payload["current_status"] = self.current_status
        return payload


class ProviderError(TMSError):
    """An external translation or review capability failed."""

    status_code = 502
    error_code = "provider_error"

    def __init__(self, message: str, provider: Optional[str] = None) -> None:
        super().__init__(message)
        self.provider = provider
