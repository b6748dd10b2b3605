"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses
- Feed snapshot models sent over the WebSocket
"""

from typing import Optional

from pydantic import BaseModel, Field

from app.models import MessageType


# =============================================================================
# Pydantic Request Models
# =============================================================================

class MessageCreate(BaseModel):
    """
    Request body for sending a message.

    Length and empty-text rules are enforced by the store, so the same
    errors are raised however a message is appended.
    """
    text: Optional[str] = Field(None, description="Message text content")
    image_url: Optional[str] = Field(None, description="Full-size image URL")
    thumbnail_url: Optional[str] = Field(None, description="Thumbnail image URL")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"text": "hello"},
                {"text": "look", "image_url": "/blobs/a_full.jpg", "thumbnail_url": "/blobs/a_thumb.jpg"},
            ]
        }
    }


class MarkReadRequest(BaseModel):
    """
    Request body for POST /messages/read.
    When message_ids is omitted the current feed window is used.
    """
    message_ids: Optional[list[str]] = Field(
        None,
        description="Messages the caller has viewed"
    )


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class MessageResponse(BaseModel):
    """
    A message as seen by one viewer.

    read_count is the number of readers other than the viewer.
    """
    id: str = Field(..., description="Opaque message identifier")
    text: str = Field("", description="Message text content")
    sender_id: str = Field(..., description="Author user id")
    sender_email: str = Field("", description="Author email")
    timestamp: str = Field(..., description="Server timestamp (ISO-8601 UTC)")
    type: MessageType = Field(..., description="text, image or mixed")
    image_url: Optional[str] = Field(None, description="Full-size image URL")
    thumbnail_url: Optional[str] = Field(None, description="Thumbnail image URL")
    read_by: dict[str, str] = Field(
        default_factory=dict,
        description="User id -> time that user first read the message"
    )
    read_count: int = Field(0, ge=0, description="Readers other than the viewer")

    model_config = {
        "from_attributes": True,  # Allow creating from ORM objects
    }


class FeedSnapshot(BaseModel):
    """
    One complete delivery of the current message window, oldest first.
    Replaces any previous snapshot.
    """
    messages: list[MessageResponse] = Field(default_factory=list)
    limit: int = Field(..., ge=1, description="Maximum messages in a snapshot")


class MarkReadResponse(BaseModel):
    marked: list[str] = Field(
        default_factory=list,
        description="Message ids submitted as newly read"
    )


class UnreadResponse(BaseModel):
    """Unread message ids in the caller's current window, oldest first."""
    message_ids: list[str] = Field(default_factory=list)
    count: int = Field(0, description="Number of unread messages, for badges")


class UploadResponse(BaseModel):
    """References to both uploaded derivatives."""
    image_url: str = Field(..., description="Full-size derivative URL")
    thumbnail_url: str = Field(..., description="Thumbnail derivative URL")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
