"""
Error taxonomy shared by the catalog, ingestion and order services.

Handlers in main.py turn every AppError into the response envelope.
"""
from typing import List, Optional


class AppError(Exception):
    status_code = 500
    default_message = "Something went wrong"

    def __init__(self, message: Optional[str] = None, details: Optional[List[str]] = None):
        self.message = message or self.default_message
        self.details = details or []
        super().__init__(self.message)

    def to_data(self):
        if self.details:
            return {"details": self.details}
        return None


class ValidationError(AppError):
    status_code = 400
    default_message = "Validation failed"

    def to_data(self):
        return {"details": self.details or [self.message]}


class NotFoundError(AppError):
    status_code = 404
    default_message = "Resource not found"


class ConflictError(AppError):
    status_code = 409
    default_message = "Resource already exists"


class AuthError(AppError):
    status_code = 401

    MISSING = "missing"
    INVALID = "invalid"
    EXPIRED = "expired"

    messages = {
        MISSING: "Access token required",
        INVALID: "Invalid token",
        EXPIRED: "Token expired",
    }

    def __init__(self, reason: str, message: Optional[str] = None):
        self.reason = reason
        super().__init__(message or self.messages.get(reason, "Unauthorized"))

    def to_data(self):
        return {"reason": self.reason}


class UpstreamError(AppError):
    status_code = 503
    default_message = "Service temporarily unavailable"


class ImageUploadError(Exception):
    """A single image could not be stored. Absorbed per file by the ingestion pipeline."""
