import logging
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, ClassVar, Iterator, List, Optional, Sequence

from sqlalchemy import exists, func, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Query, Session, sessionmaker
from sqlalchemy.sql.expression import ColumnElement

from chatstore import ingest
from chatstore.errors import ConstraintViolationError, TransientQueryError
from chatstore.events import JID, MessageEvent
from chatstore.metrics import record_storage_operation
from chatstore.migrations import Migration, MigrationRunner
from chatstore.models import ChatModel, MessageModel
from chatstore.schemas import (
    Chat,
    ChatFilter,
    Message,
    MessageFilter,
    StorageStatistics,
    to_storage_time,
    utcnow,
)

logger = logging.getLogger(__name__)


def like_pattern(value: str) -> str:
    """Build a LIKE pattern matching value as a literal substring (escape char: backslash)."""
    escaped = value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class ChatStorageRepository(ABC):
    """
    Storage contract for chats and messages.

    Every backend implements the same operations with the same observable
    results. Event ingestion is built on top of them and shared.
    """

    backend: ClassVar[str] = "unknown"

    # -- schema ---------------------------------------------------------------

    @abstractmethod
    def initialize_schema(self) -> int:
        """Apply pending migrations; return how many were applied."""

    @abstractmethod
    def get_schema_version(self) -> int:
        """Highest applied migration version (0 on a fresh backend)."""

    # -- chats ----------------------------------------------------------------

    @abstractmethod
    def store_chat(self, chat: Chat) -> None:
        """Upsert by jid."""

    @abstractmethod
    def get_chat(self, jid: str) -> Optional[Chat]:
        """Return the chat, or None if it does not exist."""

    @abstractmethod
    def delete_chat(self, jid: str) -> None:
        """Delete a chat; its messages go with it."""

    @abstractmethod
    def get_chats(self, chat_filter: Optional[ChatFilter] = None) -> List[Chat]:
        """Chats ordered by last_message_time, newest first."""

    # -- messages -------------------------------------------------------------

    @abstractmethod
    def store_message(self, message: Message) -> None:
        """Upsert by (id, chat_jid)."""

    @abstractmethod
    def store_messages_batch(self, messages: Sequence[Message]) -> None:
        """Upsert every message in one transaction; all or nothing."""

    @abstractmethod
    def get_message_by_id(self, message_id: str) -> Optional[Message]:
        """Most recent message with this id across all chats, or None."""

    @abstractmethod
    def get_messages(self, message_filter: Optional[MessageFilter] = None) -> List[Message]:
        """Messages ordered by timestamp, newest first."""

    @abstractmethod
    def search_messages(self, chat_jid: str, search_text: str, limit: Optional[int] = None) -> List[Message]:
        """Case-insensitive substring search on content within one chat."""

    @abstractmethod
    def delete_message(self, message_id: str, chat_jid: str) -> None:
        """Delete by composite key."""

    # -- aggregates -----------------------------------------------------------

    @abstractmethod
    def get_chat_message_count(self, chat_jid: str) -> int:
        pass

    @abstractmethod
    def get_total_message_count(self) -> int:
        pass

    @abstractmethod
    def get_total_chat_count(self) -> int:
        pass

    def get_storage_statistics(self) -> StorageStatistics:
        return StorageStatistics(
            chat_count=self.get_total_chat_count(),
            message_count=self.get_total_message_count(),
        )

    # -- maintenance ----------------------------------------------------------

    @abstractmethod
    def truncate_all_chats(self) -> None:
        """Remove every chat and message and reset identity sequences."""

    def truncate_all_data_with_logging(self, log_prefix: str) -> None:
        logger.info(f"{log_prefix} Truncating chats and messages ({self.backend})")
        self.truncate_all_chats()

    @abstractmethod
    def check_health(self) -> bool:
        """True when the backend answers and the schema is applied. Never raises."""

    @abstractmethod
    def close(self) -> None:
        pass

    # -- ingestion ------------------------------------------------------------

    def create_message(self, event: Optional[MessageEvent]) -> Optional[Message]:
        """Store one inbound message event. See chatstore.ingest."""
        return ingest.create_message(self, event)

    def store_sent_message_with_context(
        self,
        message_id: str,
        sender_jid: str,
        recipient_jid: str,
        content: str,
        timestamp: datetime,
    ) -> Optional[Message]:
        return ingest.store_sent_message(self, message_id, sender_jid, recipient_jid, content, timestamp)

    def get_chat_name_with_push_name(self, jid: JID, chat_jid: str, sender_user: str, push_name: str) -> str:
        """Resolve the display name for chat_jid against the stored chat."""
        existing = self.get_chat(chat_jid)
        return ingest.derive_chat_name(
            existing.name if existing is not None else None, jid, sender_user, push_name
        )


class SQLChatStorageRepository(ChatStorageRepository):
    """
    ChatStorageRepository on SQLAlchemy.

    Subclasses supply the dialect specifics: the upsert-capable insert
    construct, case-insensitive substring matching, tie-break ordering,
    truncation, table lookup, and their migration scripts.
    """

    migrations: ClassVar[Sequence[Migration]] = ()
    _insert: ClassVar[Callable]

    def __init__(self, engine: Engine):
        self.engine = engine
        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=engine,
        )

    # =========================================================================
    # Dialect hooks
    # =========================================================================

    @abstractmethod
    def _icontains(self, column, value: str) -> ColumnElement:
        """Case-insensitive literal substring match."""

    def _ordered(self, column):
        """Column expression for deterministic tie-break ordering."""
        return column

    @abstractmethod
    def _truncate(self, db: Session) -> None:
        pass

    @abstractmethod
    def _table_exists(self, db: Session, table_name: str) -> bool:
        pass

    # =========================================================================
    # Plumbing
    # =========================================================================

    @contextmanager
    def _operation(self, name: str) -> Iterator[None]:
        """Time the operation and translate backend errors."""
        start = time.perf_counter()
        error_kind = None
        try:
            yield
        except IntegrityError as e:
            error_kind = ConstraintViolationError.__name__
            logger.warning(f"{name}: constraint violation: {e.orig}")
            raise ConstraintViolationError(f"{name}: {e.orig}") from e
        except SQLAlchemyError as e:
            error_kind = TransientQueryError.__name__
            logger.error(f"{name}: backend error: {e}")
            raise TransientQueryError(f"{name}: {e}") from e
        finally:
            record_storage_operation(name, time.perf_counter() - start, error_kind)

    def _upsert_chat_stmt(self, chat: Chat, now: datetime):
        table = ChatModel.__table__
        stmt = self._insert(table).values(
            jid=chat.jid,
            name=chat.name,
            last_message_time=to_storage_time(chat.last_message_time),
            ephemeral_expiration=chat.ephemeral_expiration,
            created_at=now,
            updated_at=now,
        )
        return stmt.on_conflict_do_update(
            index_elements=[table.c.jid],
            set_={
                "name": stmt.excluded.name,
                "last_message_time": stmt.excluded.last_message_time,
                "ephemeral_expiration": stmt.excluded.ephemeral_expiration,
                "updated_at": stmt.excluded.updated_at,
            },
        )

    def _upsert_message_stmt(self, message: Message, now: datetime):
        table = MessageModel.__table__
        stmt = self._insert(table).values(
            id=message.id,
            chat_jid=message.chat_jid,
            sender=message.sender,
            content=message.content,
            timestamp=to_storage_time(message.timestamp),
            is_from_me=message.is_from_me,
            media_type=message.media_type,
            filename=message.filename,
            url=message.url,
            media_key=message.media_key,
            file_sha256=message.file_sha256,
            file_enc_sha256=message.file_enc_sha256,
            file_length=message.file_length,
            created_at=now,
            updated_at=now,
        )
        mutable = (
            "sender", "content", "timestamp", "is_from_me", "media_type", "filename",
            "url", "media_key", "file_sha256", "file_enc_sha256", "file_length", "updated_at",
        )
        return stmt.on_conflict_do_update(
            index_elements=[table.c.id, table.c.chat_jid],
            set_={name: stmt.excluded[name] for name in mutable},
        )

    def _chats_query(self, db: Session, chat_filter: Optional[ChatFilter]) -> Query:
        query = db.query(ChatModel)
        if chat_filter is not None:
            if chat_filter.search_name:
                query = query.filter(self._icontains(ChatModel.name, chat_filter.search_name))
            if chat_filter.has_media:
                query = query.filter(
                    exists().where(
                        MessageModel.chat_jid == ChatModel.jid,
                        MessageModel.media_type != "",
                    )
                )

        query = query.order_by(ChatModel.last_message_time.desc(), self._ordered(ChatModel.jid))

        if chat_filter is not None:
            if chat_filter.limit and chat_filter.limit > 0:
                query = query.limit(chat_filter.limit)
            if chat_filter.offset and chat_filter.offset > 0:
                query = query.offset(chat_filter.offset)
        return query

    def _newest_first(self, query: Query) -> Query:
        return query.order_by(
            MessageModel.timestamp.desc(),
            self._ordered(MessageModel.chat_jid),
            self._ordered(MessageModel.id),
        )

    def _messages_query(self, db: Session, message_filter: Optional[MessageFilter]) -> Query:
        query = db.query(MessageModel)
        if message_filter is not None:
            if message_filter.chat_jid:
                query = query.filter(MessageModel.chat_jid == message_filter.chat_jid)
            if message_filter.start_time is not None:
                query = query.filter(MessageModel.timestamp >= to_storage_time(message_filter.start_time))
            if message_filter.end_time is not None:
                query = query.filter(MessageModel.timestamp <= to_storage_time(message_filter.end_time))
            if message_filter.media_only:
                query = query.filter(MessageModel.media_type != "")
            if message_filter.is_from_me is not None:
                query = query.filter(MessageModel.is_from_me == message_filter.is_from_me)

        query = self._newest_first(query)
        if message_filter is not None and message_filter.limit and message_filter.limit > 0:
            query = query.limit(message_filter.limit)
        return query

    def _search_query(self, db: Session, chat_jid: str, search_text: str, limit: Optional[int]) -> Query:
        query = db.query(MessageModel).filter(
            MessageModel.chat_jid == chat_jid,
            self._icontains(MessageModel.content, search_text),
        )
        query = self._newest_first(query)
        if limit and limit > 0:
            query = query.limit(limit)
        return query

    def _count(self, name: str, model, *criteria) -> int:
        with self._operation(name), self.SessionLocal() as db:
            return db.query(func.count()).select_from(model).filter(*criteria).scalar() or 0

    # =========================================================================
    # Schema
    # =========================================================================

    def _migration_runner(self) -> MigrationRunner:
        return MigrationRunner(self.engine, self.migrations, self._insert, self.backend)

    def initialize_schema(self) -> int:
        logger.debug(f"Initializing {self.backend} chat storage schema")
        applied = self._migration_runner().run()
        logger.info(f"Chat storage schema ready ({self.backend}, {applied} migration(s) applied)")
        return applied

    def get_schema_version(self) -> int:
        return self._migration_runner().current_version()

    # =========================================================================
    # Chats
    # =========================================================================

    def store_chat(self, chat: Chat) -> None:
        with self._operation("store_chat"), self.SessionLocal.begin() as db:
            db.execute(self._upsert_chat_stmt(chat, to_storage_time(utcnow())))

    def get_chat(self, jid: str) -> Optional[Chat]:
        with self._operation("get_chat"), self.SessionLocal() as db:
            row = db.query(ChatModel).filter(ChatModel.jid == jid).first()
            return Chat.model_validate(row) if row is not None else None

    def delete_chat(self, jid: str) -> None:
        logger.info(f"Deleting chat {jid}")
        with self._operation("delete_chat"), self.SessionLocal.begin() as db:
            db.query(ChatModel).filter(ChatModel.jid == jid).delete(synchronize_session=False)

    def get_chats(self, chat_filter: Optional[ChatFilter] = None) -> List[Chat]:
        with self._operation("get_chats"), self.SessionLocal() as db:
            return [Chat.model_validate(row) for row in self._chats_query(db, chat_filter).all()]

    # =========================================================================
    # Messages
    # =========================================================================

    def store_message(self, message: Message) -> None:
        with self._operation("store_message"), self.SessionLocal.begin() as db:
            db.execute(self._upsert_message_stmt(message, to_storage_time(utcnow())))

    def store_messages_batch(self, messages: Sequence[Message]) -> None:
        if not messages:
            return
        now = to_storage_time(utcnow())
        with self._operation("store_messages_batch"), self.SessionLocal.begin() as db:
            for message in messages:
                db.execute(self._upsert_message_stmt(message, now))
        logger.info(f"Stored batch of {len(messages)} messages")

    def get_message_by_id(self, message_id: str) -> Optional[Message]:
        with self._operation("get_message_by_id"), self.SessionLocal() as db:
            query = self._newest_first(db.query(MessageModel).filter(MessageModel.id == message_id))
            row = query.first()
            return Message.model_validate(row) if row is not None else None

    def get_messages(self, message_filter: Optional[MessageFilter] = None) -> List[Message]:
        with self._operation("get_messages"), self.SessionLocal() as db:
            return [Message.model_validate(row) for row in self._messages_query(db, message_filter).all()]

    def search_messages(self, chat_jid: str, search_text: str, limit: Optional[int] = None) -> List[Message]:
        with self._operation("search_messages"), self.SessionLocal() as db:
            rows = self._search_query(db, chat_jid, search_text, limit).all()
            return [Message.model_validate(row) for row in rows]

    def delete_message(self, message_id: str, chat_jid: str) -> None:
        with self._operation("delete_message"), self.SessionLocal.begin() as db:
            db.query(MessageModel).filter(
                MessageModel.id == message_id,
                MessageModel.chat_jid == chat_jid,
            ).delete(synchronize_session=False)

    # =========================================================================
    # Aggregates
    # =========================================================================

    def get_chat_message_count(self, chat_jid: str) -> int:
        return self._count("get_chat_message_count", MessageModel, MessageModel.chat_jid == chat_jid)

    def get_total_message_count(self) -> int:
        return self._count("get_total_message_count", MessageModel)

    def get_total_chat_count(self) -> int:
        return self._count("get_total_chat_count", ChatModel)

    # =========================================================================
    # Maintenance
    # =========================================================================

    def truncate_all_chats(self) -> None:
        with self._operation("truncate_all_chats"), self.SessionLocal.begin() as db:
            self._truncate(db)

    def check_health(self) -> bool:
        logger.debug("Checking database health...")
        try:
            with self.SessionLocal() as db:
                db.execute(text("SELECT 1"))
                if not self._table_exists(db, "messages"):
                    logger.error("Database schema not applied: 'messages' table not found")
                    return False
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False
        logger.debug("Database health check passed")
        return True

    def close(self) -> None:
        self.engine.dispose()
