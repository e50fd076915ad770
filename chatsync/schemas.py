"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses (also parsed by the sync client)

Room codes, nicknames and message content are length-checked by the
registry and store so each failure gets its own error kind; the models
here only enforce structure.
"""

from typing import Optional

from pydantic import BaseModel, Field


# =============================================================================
# Pydantic Request Models
# =============================================================================

class CreateRoomRequest(BaseModel):
    """Body of POST /rooms."""
    code: str = Field(..., description="Room code chosen by the creator (trimmed, 1-30 chars)")


class SendMessageRequest(BaseModel):
    """
    Body of POST /rooms/{code}/messages.

    At least one of content/image/video/audio must be non-empty.
    nonce makes the call idempotent: resending the same nonce with the same
    owner_id and content returns the original message id.
    """
    content: str = Field("", description="Message text")
    nickname: str = Field(..., description="Display name, 1-20 chars after trimming")
    owner_id: str = Field(..., min_length=1, description="Opaque client session id")
    reply_to_id: Optional[int] = Field(None, ge=1, description="Id of the message being replied to")
    image: Optional[str] = Field(None, description="Opaque image reference")
    video: Optional[str] = Field(None, description="Opaque video reference")
    audio: Optional[str] = Field(None, description="Opaque audio reference")
    nonce: Optional[str] = Field(None, max_length=128, description="Client deduplication token")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "content": "hello",
                    "nickname": "alice",
                    "owner_id": "u1",
                    "nonce": "n1",
                }
            ]
        }
    }


class EditMessageRequest(BaseModel):
    """Body of PATCH /rooms/{code}/messages/{id}. Omitted media keeps the current ref."""
    owner_id: str = Field(..., min_length=1)
    content: str = Field("", description="Replacement text")
    image: Optional[str] = None
    video: Optional[str] = None
    audio: Optional[str] = None


class ReactionRequest(BaseModel):
    """Body of POST /rooms/{code}/messages/{id}/reactions."""
    user_id: str = Field(..., min_length=1)
    emoji: str = Field(..., min_length=1, max_length=32)


# =============================================================================
# Pydantic Response Models
# =============================================================================

class RoomResponse(BaseModel):
    code: str


class RoomExistsResponse(BaseModel):
    code: str
    exists: bool


class SendMessageResponse(BaseModel):
    id: int = Field(..., description="Server-assigned message id")
    duplicate: bool = Field(False, description="True when the nonce matched an earlier send")


class MutationResponse(BaseModel):
    """ok=false means the message was absent or the caller does not own it."""
    ok: bool


class ReactionView(BaseModel):
    user_id: str
    emoji: str


class MessageView(BaseModel):
    """A message as seen by clients. timestamp is nanoseconds since the epoch."""
    id: int
    content: str
    timestamp: int
    nickname: str
    reply_to_id: Optional[int] = None
    image_url: Optional[str] = None
    video_url: Optional[str] = None
    audio_url: Optional[str] = None
    is_edited: bool = False
    reactions: list[ReactionView] = Field(default_factory=list)
    owner: str
    nonce: Optional[str] = None


class TTLResponse(BaseModel):
    ttl_seconds: int


class PruneResponse(BaseModel):
    messages_pruned: int = Field(..., ge=0)
    rooms_pruned: int = Field(..., ge=0)


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Sanitized error description")
    kind: str = Field(..., description="Error kind (validation, not_found, conflict, ...)")
    code: str = Field(..., description="Specific error class name")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
