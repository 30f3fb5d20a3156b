"""
SQLAlchemy ORM models for the chat storage tables.

The tables themselves are created by the versioned scripts in migrations.py;
these mappings must stay in step with them. For the pydantic values handed to
callers, see schemas.py.
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    LargeBinary,
    Text,
)
from sqlalchemy.orm import declarative_base

# Base class for SQLAlchemy models
Base = declarative_base()


class ChatModel(Base):
    """
    One conversation (direct, group, or newsletter).

    Table: chats
    Primary Key: jid
    """
    __tablename__ = "chats"

    jid = Column(Text, primary_key=True)
    name = Column(Text, nullable=False)
    last_message_time = Column(DateTime, nullable=False, index=True)
    ephemeral_expiration = Column(Integer, default=0)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)


class MessageModel(Base):
    """
    One message inside a chat.

    Table: messages
    Primary Key: (id, chat_jid); a message id is only unique within its chat
    """
    __tablename__ = "messages"

    id = Column(Text, primary_key=True)
    chat_jid = Column(
        Text,
        ForeignKey("chats.jid", ondelete="CASCADE"),
        primary_key=True,
    )
    sender = Column(Text, nullable=False)
    content = Column(Text)
    timestamp = Column(DateTime, nullable=False)
    is_from_me = Column(Boolean, default=False)
    media_type = Column(Text)
    filename = Column(Text)
    url = Column(Text)
    media_key = Column(LargeBinary)
    file_sha256 = Column(LargeBinary)
    file_enc_sha256 = Column(LargeBinary)
    file_length = Column(Integer, default=0)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)


class SchemaInfoModel(Base):
    """Migration ledger. Written only by the migration engine."""
    __tablename__ = "schema_info"

    version = Column(Integer, primary_key=True)
    updated_at = Column(DateTime)


class AppUserModel(Base):
    """Credentials seeded at startup for an outer REST layer."""
    __tablename__ = "app_users"

    username = Column(Text, primary_key=True)
    password_hash = Column(Text, nullable=False)
    role = Column(Text, default="admin")
    enabled = Column(Boolean, default=True)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)
