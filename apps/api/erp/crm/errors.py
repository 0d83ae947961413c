from __future__ import annotations

from typing import Any

from fastapi import HTTPException, status


class CRMError(HTTPException):
    """Base for domain errors raised by the CRM services.

    Subclasses pin the HTTP status so the API layer can turn any of them into
    the standard error envelope without inspecting the type.
    """

    status_code = status.HTTP_400_BAD_REQUEST
    code = "CRM_ERROR"

    def __init__(self, message: str, *, code: str | None = None, **extra: Any) -> None:
        detail: dict[str, Any] = {"code": code or self.code, "message": message}
        detail.update(extra)
        super().__init__(status_code=self.status_code, detail=detail)
        self.message = message


class NotFoundError(CRMError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"


class ValidationError(CRMError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION_FAILED"


class ConflictError(CRMError):
    status_code = status.HTTP_409_CONFLICT
    code = "CONFLICT"


class ConcurrencyError(CRMError):
    """Lock timeout or serialization failure; safe for the caller to retry."""

    status_code = status.HTTP_409_CONFLICT
    code = "CONCURRENT_MODIFICATION"

    def __init__(self, message: str, *, operation: str) -> None:
        super().__init__(message, operation=operation, retryable=True)
        self.operation = operation
