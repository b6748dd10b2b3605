"""
Error taxonomy for the chat service.

Each error carries the HTTP status it maps to so a single exception
handler in main.py can render all of them.
"""

from fastapi import status


class ChatServiceError(Exception):
    """Base class for errors surfaced to callers."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class Unauthenticated(ChatServiceError):
    """No caller identity was attached to a write."""

    status_code = status.HTTP_401_UNAUTHORIZED


class ValidationError(ChatServiceError):
    """Message text too long, or empty without an image."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class NotFound(ChatServiceError):
    status_code = status.HTTP_404_NOT_FOUND


class TransientStoreError(ChatServiceError):
    """
    Backend failure. Safe to retry: every mutating operation on the
    store is idempotent.
    """

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class UploadFailure(ChatServiceError):
    """Either image derivative failed; the whole image send is aborted."""

    status_code = status.HTTP_502_BAD_GATEWAY
