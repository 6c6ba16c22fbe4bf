"""
Domain exceptions for the file service.

Every failure a request can hit maps to one of these classes; the API layer
turns them into RFC 7807 responses using ``code`` and ``status``.
"""

from __future__ import annotations


class ServiceError(Exception):
    """Base class carrying a stable error code and HTTP status."""

    code = "service_error"
    title = "Service error"
    status = 500

    def __init__(self, message: str, *, code: str | None = None):
        self.message = message
        if code is not None:
            self.code = code
        super().__init__(message)


class ValidationError(ServiceError):
    """Missing or malformed client/filename parameters."""

    code = "validation_error"
    title = "Invalid request"
    status = 400


class AuthError(ServiceError):
    """Unknown client, bad API key or origin mismatch."""

    code = "unauthorized"
    title = "Unauthorized"
    status = 401


class TokenError(ServiceError):
    """Base class for presign token rejections."""

    code = "token_error"
    title = "Invalid upload token"
    status = 401


class MalformedToken(TokenError):
    code = "malformed_token"
    title = "Malformed upload token"
    status = 400


class Expired(TokenError):
    code = "token_expired"
    title = "Upload token expired"


class InvalidSignature(TokenError):
    code = "invalid_signature"
    title = "Invalid upload token signature"


class StorageError(ServiceError):
    """Underlying I/O failure. Never retried by the service."""

    code = "storage_error"
    title = "Storage failure"
    status = 500


class ConfigurationError(Exception):
    """Raised at startup when required settings are missing."""
