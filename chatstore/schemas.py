"""
Pydantic models for the values the chat storage layer accepts and returns.

This module contains:
- Entity models (Chat, Message) built from ORM rows
- Filter models for chat and message listings
- The aggregate statistics snapshot

All datetimes are normalized to timezone-aware UTC. Naive datetimes are
taken to already be in UTC.
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field, field_validator


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return value as an aware UTC datetime (naive input is assumed UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_storage_time(value: Optional[datetime]) -> Optional[datetime]:
    """Convert to the naive UTC form both backends store."""
    if value is None:
        return None
    return as_utc(value).replace(tzinfo=None)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Entity Models
# =============================================================================

class Chat(BaseModel):
    """
    A stored conversation.

    Exactly one Chat exists per JID. The row is created implicitly when the
    first message of the conversation is ingested.
    """
    jid: str = Field(..., min_length=1, description="Conversation address")
    name: str = Field("", description="Display name")
    last_message_time: datetime = Field(..., description="Timestamp of the newest stored message")
    ephemeral_expiration: int = Field(0, ge=0, description="Disappearing-message timer in seconds")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    @field_validator("name", mode="before")
    @classmethod
    def _none_name(cls, v):
        return "" if v is None else v

    @field_validator("ephemeral_expiration", mode="before")
    @classmethod
    def _none_expiration(cls, v):
        return 0 if v is None else v

    @field_validator("last_message_time", "created_at", "updated_at")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)


class Message(BaseModel):
    """
    A stored message, keyed by (id, chat_jid).

    content is empty for media-only messages. The media fields are empty
    (or None for the byte fields) for plain text messages.
    """
    id: str = Field(..., min_length=1, description="Message id, unique within its chat")
    chat_jid: str = Field(..., min_length=1, description="Owning chat")
    sender: str = Field("", description="Sender JID")
    content: str = ""
    timestamp: datetime
    is_from_me: bool = False
    media_type: str = ""
    filename: str = ""
    url: str = ""
    media_key: Optional[bytes] = None
    file_sha256: Optional[bytes] = None
    file_enc_sha256: Optional[bytes] = None
    file_length: int = Field(0, ge=0)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    @field_validator("sender", "content", "media_type", "filename", "url", mode="before")
    @classmethod
    def _none_text(cls, v):
        return "" if v is None else v

    @field_validator("file_length", mode="before")
    @classmethod
    def _none_length(cls, v):
        return 0 if v is None else v

    @field_validator("is_from_me", mode="before")
    @classmethod
    def _none_flag(cls, v):
        return False if v is None else v

    @field_validator("timestamp", "created_at", "updated_at")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)


# =============================================================================
# Filter Models
# =============================================================================

class ChatFilter(BaseModel):
    """
    Filters for chat listings. Set fields combine with AND.

    - search_name: case-insensitive substring of the chat name
    - has_media: only chats with at least one media message
    - limit/offset: pagination; None or <= 0 means unbounded
    """
    search_name: Optional[str] = None
    has_media: bool = False
    limit: Optional[int] = None
    offset: Optional[int] = None


class MessageFilter(BaseModel):
    """
    Filters for message listings. Set fields combine with AND.

    start_time and end_time are inclusive.
    """
    chat_jid: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    media_only: bool = False
    is_from_me: Optional[bool] = None
    limit: Optional[int] = None


# =============================================================================
# Aggregates
# =============================================================================

class StorageStatistics(BaseModel):
    """Combined row counts."""
    chat_count: int = Field(..., ge=0)
    message_count: int = Field(..., ge=0)
