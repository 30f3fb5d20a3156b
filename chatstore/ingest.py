"""
Translate inbound message events into stored chats and messages.

Ingestion is read-then-merge-then-write: the current chat row is read once,
the new chat state is derived from it and the event by the pure functions
below, and both writes are upserts. A retry after a partial failure is safe.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import TYPE_CHECKING, Iterator, Optional

from chatstore.errors import ChatStorageError
from chatstore.events import JID, MessageEvent
from chatstore.logging_utils import ingestion_context
from chatstore.metrics import record_ingest_outcome
from chatstore.payload import (
    MediaInfo,
    extract_ephemeral_expiration,
    extract_media_info,
    extract_message_text,
)
from chatstore.schemas import Chat, Message, as_utc

if TYPE_CHECKING:
    from chatstore.repository.base import ChatStorageRepository

logger = logging.getLogger(__name__)


# =============================================================================
# Merge Rules
# =============================================================================

def derive_chat_name(existing_name: Optional[str], jid: JID, sender_user: str, push_name: str) -> str:
    """
    Pick the display name for a chat.

    A stored name wins, except when it is only a placeholder (the chat's own
    user fragment or the sender's bare identifier, checked in that order) and
    a push name is available: then the push name replaces it.

    Without a stored name: groups and newsletters get a synthesized label;
    direct chats prefer a meaningful push name, then the sender identifier,
    then the chat's user fragment.
    """
    if existing_name:
        if push_name and existing_name in (jid.user, sender_user):
            return push_name
        return existing_name

    if jid.is_group:
        return f"Group {jid.user}"
    if jid.is_newsletter:
        return f"Newsletter {jid.user}"

    if push_name and push_name != sender_user and push_name != jid.user:
        return push_name
    if sender_user:
        return sender_user
    return jid.user


def resolve_ephemeral_expiration(extracted: int, existing: Optional[Chat]) -> int:
    """An explicit positive timer wins; otherwise the stored one is kept."""
    if extracted > 0:
        return extracted
    if existing is not None:
        return existing.ephemeral_expiration
    return 0


def resolve_last_message_time(timestamp: datetime, existing: Optional[Chat]) -> datetime:
    """last_message_time never moves backwards (history sync delivers old events)."""
    timestamp = as_utc(timestamp)
    if existing is not None and existing.last_message_time > timestamp:
        return existing.last_message_time
    return timestamp


def build_chat(event: MessageEvent, existing: Optional[Chat]) -> Chat:
    """Derive the chat row to upsert for event, given the stored chat."""
    info = event.info
    return Chat(
        jid=str(info.chat),
        name=derive_chat_name(
            existing.name if existing is not None else None,
            info.chat,
            info.sender.user,
            info.push_name,
        ),
        last_message_time=resolve_last_message_time(info.timestamp, existing),
        ephemeral_expiration=resolve_ephemeral_expiration(
            extract_ephemeral_expiration(event.message), existing
        ),
    )


def build_message(event: MessageEvent, content: str, media: MediaInfo) -> Optional[Message]:
    """Return the message to store, or None when nothing is user-visible."""
    if not content and not media.media_type:
        return None
    info = event.info
    return Message(
        id=info.id,
        chat_jid=str(info.chat),
        sender=str(info.sender),
        content=content,
        timestamp=info.timestamp,
        is_from_me=info.is_from_me,
        media_type=media.media_type,
        filename=media.filename,
        url=media.url,
        media_key=media.media_key,
        file_sha256=media.file_sha256,
        file_enc_sha256=media.file_enc_sha256,
        file_length=media.file_length,
    )


# =============================================================================
# Store Orchestration
# =============================================================================

@contextmanager
def _step(name: str) -> Iterator[None]:
    """Tag a storage error with the ingestion step that raised it."""
    try:
        yield
    except ChatStorageError as e:
        e.step = name
        raise


def create_message(repository: "ChatStorageRepository", event: Optional[MessageEvent]) -> Optional[Message]:
    """
    Store one inbound message event.

    Upserts the chat, then the message when it has text or media.

    Returns:
        The stored Message, or None when no message row was written
    """
    if event is None or event.message is None:
        record_ingest_outcome("no_payload")
        return None

    info = event.info
    chat_jid = str(info.chat)

    with ingestion_context(info.id):
        # Read the whole payload before the first write
        content = extract_message_text(event.message)
        media = extract_media_info(event.message)
        message = build_message(event, content, media)

        with _step("get chat"):
            existing = repository.get_chat(chat_jid)

        chat = build_chat(event, existing)
        with _step("store chat"):
            repository.store_chat(chat)
        logger.debug(f"Chat upserted: jid={chat_jid}, name={chat.name!r}")

        if message is None:
            logger.debug(f"No text or media in event for chat {chat_jid}, message not stored")
            record_ingest_outcome("skipped_empty")
            return None

        with _step("store message"):
            repository.store_message(message)

    logger.info(f"Message ingested: chat={chat_jid}, media_type={media.media_type or '-'}")
    record_ingest_outcome("stored")
    return message


def store_sent_message(
    repository: "ChatStorageRepository",
    message_id: str,
    sender_jid: str,
    recipient_jid: str,
    content: str,
    timestamp: datetime,
) -> Optional[Message]:
    """
    Store a text message this account sent.

    The recipient chat is created if missing and its last_message_time
    advanced. Empty content stores nothing.

    Raises:
        InvalidInputError: recipient_jid is malformed; nothing is written
    """
    if not content:
        return None

    jid = JID.parse(recipient_jid)
    with ingestion_context(message_id):
        with _step("get chat"):
            existing = repository.get_chat(recipient_jid)

        chat = Chat(
            jid=recipient_jid,
            name=derive_chat_name(existing.name if existing else None, jid, "", ""),
            last_message_time=resolve_last_message_time(timestamp, existing),
            ephemeral_expiration=existing.ephemeral_expiration if existing else 0,
        )
        with _step("store chat"):
            repository.store_chat(chat)

        message = Message(
            id=message_id,
            chat_jid=recipient_jid,
            sender=sender_jid,
            content=content,
            timestamp=timestamp,
            is_from_me=True,
        )
        with _step("store message"):
            repository.store_message(message)
    return message
