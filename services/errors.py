"""Application error types.

Services raise these; ``app.py`` maps each family onto an HTTP status and a
``{"error": message, "code": code}`` body.
"""
from __future__ import annotations

from typing import Any, List


class AppError(Exception):
    """Base exception for application-level errors."""

    status_code = 500
    code = "server_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class ValidationError(AppError):
    """Raised when request or payload validation fails."""

    status_code = 400
    code = "validation_error"

    def __init__(self, message: str, *, field: str | None = None, invalid: List[Any] | None = None):
        super().__init__(message)
        self.field = field
        self.invalid = invalid


class AuthenticationError(AppError):
    status_code = 401
    code = "authentication_required"


class AuthorizationError(AppError):
    status_code = 403
    code = "forbidden"


class NotFoundError(AppError):
    """Raised when a requested resource cannot be located (or is not the caller's)."""

    status_code = 404
    code = "not_found"


class ConflictError(AppError):
    status_code = 409
    code = "conflict"


__all__ = [
    "AppError",
    "ValidationError",
    "AuthenticationError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
]
