"""
Domain models for the file service.
"""

from pydantic import BaseModel, Field


class ClientRecord(BaseModel):
    """Tenant credentials and CORS policy."""

    client_id: str = Field(..., min_length=1, pattern=r"^[A-Za-z0-9_-]+$")
    api_key: str = Field(..., min_length=1)
    allowed_origin: str


class UploadResponse(BaseModel):
    """Result of a direct or presigned upload."""

    message: str = "uploaded"
    path: str


class MessageResponse(BaseModel):
    message: str


class PresignResponse(BaseModel):
    """Relative URL that accepts one upload until the token expires."""

    url: str
