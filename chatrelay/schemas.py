"""
Pydantic schemas for request/response validation.

This module contains:
- The inbound webhook message model and its canonical payload
- Response models for the webhook and inspection endpoints
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator


# =============================================================================
# Pydantic Request Models
# =============================================================================

class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VOICE = "voice"
    VIDEO = "video"
    LOCATION = "location"
    LINK = "link"


# Fields copied into the stored payload, per message type
PAYLOAD_FIELDS = {
    MessageType.TEXT: ("content",),
    MessageType.IMAGE: ("pic_url", "media_id"),
    MessageType.VOICE: ("media_id", "format", "recognition"),
    MessageType.VIDEO: ("media_id", "thumb_media_id"),
    MessageType.LOCATION: ("latitude", "longitude", "scale", "label"),
    MessageType.LINK: ("title", "description", "url"),
}

# Fields without which a message of that type carries nothing usable
REQUIRED_FIELDS = {
    MessageType.TEXT: ("content",),
    MessageType.IMAGE: ("pic_url",),
    MessageType.VOICE: ("media_id",),
    MessageType.VIDEO: ("media_id",),
    MessageType.LOCATION: ("latitude", "longitude"),
    MessageType.LINK: ("url",),
}


class InboundMessage(BaseModel):
    """
    Pydantic model for validating incoming webhook messages.

    Validates:
    - message_id: non-empty string
    - from/to: non-empty participant identifiers
    - create_time: unix seconds assigned by the channel
    - msg_type: one of the supported message types
    - the type-specific fields required by msg_type
    """
    message_id: str = Field(..., min_length=1, description="Channel-assigned message identifier")
    # Note: 'from' is a reserved word in Python, so we use alias
    from_user: str = Field(..., alias="from", min_length=1, description="Remote participant id")
    to: str = Field(..., min_length=1, description="Local participant id")
    create_time: int = Field(..., ge=0, description="Message creation time (unix seconds)")
    msg_type: MessageType = Field(..., description="Message type")

    content: Optional[str] = Field(None, max_length=4096)
    pic_url: Optional[str] = None
    media_id: Optional[str] = None
    format: Optional[str] = None
    recognition: Optional[str] = None
    thumb_media_id: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    scale: Optional[int] = None
    label: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    url: Optional[str] = None

    @model_validator(mode="after")
    def check_type_fields(self) -> "InboundMessage":
        missing = [name for name in REQUIRED_FIELDS[self.msg_type] if getattr(self, name) is None]
        if missing:
            raise ValueError(f"{self.msg_type.value} message requires: {', '.join(missing)}")
        return self

    def payload(self) -> dict:
        """Canonical stored payload: only the fields of this message type that are set."""
        return {
            name: getattr(self, name)
            for name in PAYLOAD_FIELDS[self.msg_type]
            if getattr(self, name) is not None
        }

    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "examples": [
                {
                    "message_id": "1234567890123456",
                    "from": "oUser123",
                    "to": "gh_service",
                    "create_time": 1736935200,
                    "msg_type": "text",
                    "content": "Hello"
                }
            ]
        }
    }


# =============================================================================
# Pydantic Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Response model for webhook processing."""
    status: str = Field(default="ok", description="Operation status")
    state: Optional[str] = Field(None, description="Engine state of the message")
    replies: list[str] = Field(default_factory=list, description="Reply texts for the channel")


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")


class PartitionResponse(BaseModel):
    remote_id: str
    local_id: str
    created_at: Optional[int] = None


class PartitionsListResponse(BaseModel):
    data: list[PartitionResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class ContextItem(BaseModel):
    type: str
    payload: Any


class ContextEntryResponse(BaseModel):
    user: ContextItem
    agent: list[ContextItem] = Field(default_factory=list)


class ContextResponse(BaseModel):
    data: list[ContextEntryResponse] = Field(default_factory=list)


class BufferedReplyResponse(BaseModel):
    sequence: int
    type: str
    payload: Any


class MessageStateResponse(BaseModel):
    """Stored state of one inbound message plus what a redelivery would see."""
    id: str
    created_at: int
    type: str
    payload: Any
    replied: bool
    knock_count: int
    reply_status: str = Field(..., description="replied, ready or pending")
    replies: list[BufferedReplyResponse] = Field(default_factory=list)


class StatsResponse(BaseModel):
    total_messages: int = Field(..., ge=0)
    replied_messages: int = Field(..., ge=0)
    unreplied_messages: int = Field(..., ge=0)
    total_knocks: int = Field(..., ge=0)
    first_message_at: Optional[int] = None
    last_message_at: Optional[int] = None


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
