"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses (also used by the HTTP store client)
- The change feed event envelope
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


SenderType = Literal["admin", "guest"]
FeedEventType = Literal["insert", "update", "delete", "reaction_added", "reaction_removed", "typing"]

MAX_BODY_LENGTH = 4096


# =============================================================================
# Pydantic Request Models
# =============================================================================

class ConversationCreateRequest(BaseModel):
    """Open (or look up) the conversation between an admin and a guest of an event."""
    event_id: str = Field(..., min_length=1, description="Event the conversation belongs to")
    admin_identity: str = Field(..., min_length=1, description="Staff member identity (email)")
    guest_identity: str = Field(..., min_length=1, description="Guest identity (email)")


class MessageCreateRequest(BaseModel):
    """
    Pydantic model for validating a new chat message.

    Validates:
    - sender_type: admin or guest
    - sender_identity: non-empty string
    - body: non-blank after stripping, max 4096 characters
    """
    sender_type: SenderType = Field(..., description="Which side of the conversation sent it")
    sender_identity: str = Field(..., min_length=1, description="Sender identity (email)")
    body: str = Field(..., max_length=MAX_BODY_LENGTH, description="Message text")
    reply_to_id: Optional[int] = Field(None, description="Message being replied to")
    sender_name: Optional[str] = Field(None, max_length=120, description="Display name used in the push title")

    @field_validator("body")
    @classmethod
    def validate_body_not_blank(cls, v: str) -> str:
        """Strip surrounding whitespace and reject empty bodies."""
        v = v.strip()
        if not v:
            raise ValueError("body must not be blank")
        return v

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "sender_type": "guest",
                    "sender_identity": "guest@example.com",
                    "body": "Is the shuttle leaving at 9?",
                }
            ]
        }
    }


class MessageUpdateRequest(BaseModel):
    """Edit request; only the original sender may edit."""
    editor_identity: str = Field(..., min_length=1)
    body: str = Field(..., max_length=MAX_BODY_LENGTH)

    @field_validator("body")
    @classmethod
    def validate_body_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("body must not be blank")
        return v


class ReactionRequest(BaseModel):
    reactor: str = Field(..., min_length=1, description="Reacting identity")
    emoji: str = Field(..., min_length=1, max_length=16, description="Emoji character(s)")


class TypingRequest(BaseModel):
    """Ephemeral typing indicator; published on the change feed, never stored."""
    identity: str = Field(..., min_length=1)
    is_typing: bool = True


class DeviceTokenRequest(BaseModel):
    """Register or refresh a push token for an identity."""
    identity: str = Field(..., min_length=1)
    token: str = Field(..., min_length=1)
    platform: Optional[str] = Field(None, description="ios, android, web")


class DispatchHookRequest(BaseModel):
    """Signed trigger asking the service to dispatch a pending notification."""
    notification_id: int = Field(..., ge=1)


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class StatusResponse(BaseModel):
    status: str = Field(default="ok", description="Operation status")


class ConversationResponse(BaseModel):
    id: int
    event_id: str
    admin_identity: str
    guest_identity: str
    created_at: datetime

    model_config = {"from_attributes": True}


class ReactionOut(BaseModel):
    reactor: str
    emoji: str

    model_config = {"from_attributes": True}


class MessageResponse(BaseModel):
    """
    A stored message as returned by the store and carried in feed events.
    """
    id: int = Field(..., description="Authoritative message id")
    conversation_id: int
    sender_type: SenderType
    sender_identity: str
    body: str
    created_at: datetime
    is_edited: bool = False
    edited_at: Optional[datetime] = None
    reply_to_id: Optional[int] = None
    reactions: list[ReactionOut] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class MessagesListResponse(BaseModel):
    """
    Response model for GET /conversations/{id}/messages.

    Contains:
    - data: the window of messages, oldest first
    - total: total count of messages in the conversation
    - limit: window size
    - offset: starting position (0 for keyset requests)
    """
    data: list[MessageResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)
    limit: int = Field(..., ge=1)
    offset: int = Field(..., ge=0)


class CountResponse(BaseModel):
    total: int = Field(..., ge=0)


class ReactionResponse(BaseModel):
    status: str = Field(default="ok")
    duplicate: bool = Field(False, description="The reaction already existed")


class DeviceTokenResponse(BaseModel):
    status: str = Field(default="ok")
    created: bool


class DispatchHookResponse(BaseModel):
    status: str = Field(default="queued")
    notification_id: int


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


# =============================================================================
# Change Feed
# =============================================================================

class FeedEvent(BaseModel):
    """
    One change feed event for a conversation.

    insert/update carry the full message; delete carries message_id;
    reaction_added/reaction_removed carry message_id, reactor and emoji;
    typing carries identity and is_typing and is not persisted.
    Delivery is at-least-once, so consumers must merge by id.
    """
    type: FeedEventType
    conversation_id: int
    seq: int = 0
    message: Optional[MessageResponse] = None
    message_id: Optional[int] = None
    reactor: Optional[str] = None
    emoji: Optional[str] = None
    identity: Optional[str] = None
    is_typing: Optional[bool] = None
