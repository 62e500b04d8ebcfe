from typing import Any, Dict, Optional

from fastapi import HTTPException, status


class SchedulerError(Exception):
    code = "scheduler_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_detail(self) -> Dict[str, Any]:
        detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            detail["details"] = self.details
        return detail


class ValidationError(SchedulerError):
    """The schedule definition or update is malformed or incomplete."""

    code = "validation_error"


class AuthorizationError(SchedulerError):
    """The principal lacks the capability for the channel and action."""

    code = "forbidden"


class NotFoundError(SchedulerError):
    code = "not_found"


class ConflictError(SchedulerError):
    """Lost a claim or wrote against a stale version."""

    code = "conflict"


class PersistenceError(SchedulerError):
    code = "persistence_unavailable"


HTTP_STATUS_BY_ERROR = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    AuthorizationError: status.HTTP_403_FORBIDDEN,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ConflictError: status.HTTP_409_CONFLICT,
    PersistenceError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def to_http_exception(exc: SchedulerError) -> HTTPException:
    for error_type, status_code in HTTP_STATUS_BY_ERROR.items():
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=exc.to_detail())
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=exc.to_detail())
