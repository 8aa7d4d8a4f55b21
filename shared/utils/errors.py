"""
shared/utils/errors.py
Domain error taxonomy raised by the workflows and translated to HTTP
responses by the handlers registered in main.py.
"""

from typing import Any, Optional

from fastapi import status


class AppError(Exception):
    """Base class for user-facing errors."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "ERROR"

    def __init__(self, message: str, errors: Optional[list[dict[str, Any]]] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors


class ValidationError(AppError):
    """Malformed or out-of-range input."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None, errors=None):
        if field and errors is None:
            errors = [{"field": field, "message": message}]
        super().__init__(message, errors)


class AuthorizationError(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "FORBIDDEN"


class NotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"


class ConflictError(AppError):
    """State changed underneath the caller; re-fetch before retrying."""

    status_code = status.HTTP_409_CONFLICT
    code = "CONFLICT"


class InsufficientBalanceError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "INSUFFICIENT_BALANCE"

    def __init__(self, message: str = "Insufficient balance"):
        super().__init__(message)
