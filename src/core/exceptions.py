"""Application error types translated into HTTP responses at the API edge."""
from __future__ import annotations

from typing import Optional

from fastapi import status


class AppError(Exception):
    """Base error carrying a machine readable code and an HTTP status."""

    code = "INTERNAL_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, *, field: Optional[str] = None) -> None:
        self.message = message
        self.field = field
        super().__init__(message)


class ValidationError(AppError):
    """Malformed or missing input. ``field`` names the first violated field."""

    code = "VALIDATION_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(AppError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(AppError):
    code = "CONFLICT"
    status_code = status.HTTP_409_CONFLICT


class AuthenticationError(AppError):
    code = "UNAUTHORIZED"
    status_code = status.HTTP_401_UNAUTHORIZED


class RateLimitError(AppError):
    code = "RATE_LIMITED"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
