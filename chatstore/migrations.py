"""
Versioned schema migrations.

Each backend carries an append-only tuple of Migration scripts. A migration is
never edited once released; schema changes are new entries at the end. The
highest applied version is recorded in the schema_info ledger.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Sequence, Tuple

from sqlalchemy import func, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from chatstore.errors import MigrationError
from chatstore.metrics import record_migration_applied
from chatstore.models import SchemaInfoModel
from chatstore.schemas import to_storage_time, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    statements: Tuple[str, ...]


# Always executed first, outside the versioned list. Valid on both backends.
SCHEMA_INFO_DDL = """
CREATE TABLE IF NOT EXISTS schema_info (
    version INTEGER PRIMARY KEY,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
)
"""

_SHARED_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_messages_chat_jid ON messages(chat_jid)",
    "CREATE INDEX IF NOT EXISTS idx_messages_timestamp ON messages(timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_messages_media_type ON messages(media_type)",
    "CREATE INDEX IF NOT EXISTS idx_messages_sender ON messages(sender)",
    "CREATE INDEX IF NOT EXISTS idx_chats_last_message ON chats(last_message_time)",
    "CREATE INDEX IF NOT EXISTS idx_chats_name ON chats(name)",
)


# =============================================================================
# SQLite
# =============================================================================

SQLITE_MIGRATIONS: Tuple[Migration, ...] = (
    Migration(1, "create_chats_and_messages", (
        """
        CREATE TABLE IF NOT EXISTS chats (
            jid TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            last_message_time TIMESTAMP NOT NULL,
            ephemeral_expiration INTEGER DEFAULT 0,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS messages (
            id TEXT NOT NULL,
            chat_jid TEXT NOT NULL,
            sender TEXT NOT NULL,
            content TEXT,
            timestamp TIMESTAMP NOT NULL,
            is_from_me BOOLEAN DEFAULT 0,
            media_type TEXT,
            filename TEXT,
            url TEXT,
            media_key BLOB,
            file_sha256 BLOB,
            file_enc_sha256 BLOB,
            file_length INTEGER DEFAULT 0,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (id, chat_jid),
            FOREIGN KEY (chat_jid) REFERENCES chats(jid) ON DELETE CASCADE
        )
        """,
    ) + _SHARED_INDEXES),
    Migration(2, "index_message_id", (
        "CREATE INDEX IF NOT EXISTS idx_messages_id ON messages(id)",
    )),
    Migration(3, "create_app_users", (
        """
        CREATE TABLE IF NOT EXISTS app_users (
            username TEXT PRIMARY KEY,
            password_hash TEXT NOT NULL,
            role TEXT DEFAULT 'admin',
            enabled BOOLEAN DEFAULT 1,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_app_users_enabled ON app_users(enabled)",
    )),
)


# =============================================================================
# PostgreSQL
# =============================================================================

POSTGRES_MIGRATIONS: Tuple[Migration, ...] = (
    Migration(1, "create_chats_and_messages", (
        """
        CREATE TABLE IF NOT EXISTS chats (
            jid TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            last_message_time TIMESTAMP NOT NULL,
            ephemeral_expiration INTEGER DEFAULT 0,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS messages (
            id TEXT NOT NULL,
            chat_jid TEXT NOT NULL,
            sender TEXT NOT NULL,
            content TEXT,
            timestamp TIMESTAMP NOT NULL,
            is_from_me BOOLEAN DEFAULT FALSE,
            media_type TEXT,
            filename TEXT,
            url TEXT,
            media_key BYTEA,
            file_sha256 BYTEA,
            file_enc_sha256 BYTEA,
            file_length INTEGER DEFAULT 0,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (id, chat_jid),
            FOREIGN KEY (chat_jid) REFERENCES chats(jid) ON DELETE CASCADE
        )
        """,
    ) + _SHARED_INDEXES),
    Migration(2, "index_message_id", (
        "CREATE INDEX IF NOT EXISTS idx_messages_id ON messages(id)",
    )),
    Migration(3, "create_app_users", (
        """
        CREATE TABLE IF NOT EXISTS app_users (
            username TEXT PRIMARY KEY,
            password_hash TEXT NOT NULL,
            role TEXT DEFAULT 'admin',
            enabled BOOLEAN DEFAULT TRUE,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_app_users_enabled ON app_users(enabled)",
    )),
)


# =============================================================================
# Runner
# =============================================================================

class MigrationRunner:
    """
    Applies pending migrations in order, one transaction per migration.

    Args:
        engine: Engine for the target backend
        migrations: Ordered migrations; versions must be 1..N
        insert: Dialect insert() that supports on_conflict_do_update
        backend: Backend name used in logs and metrics
    """

    def __init__(
        self,
        engine: Engine,
        migrations: Sequence[Migration],
        insert: Callable,
        backend: str,
    ):
        expected = list(range(1, len(migrations) + 1))
        if [m.version for m in migrations] != expected:
            raise ValueError(f"migration versions must be contiguous from 1, got {[m.version for m in migrations]}")
        self.engine = engine
        self.migrations = tuple(migrations)
        self._insert = insert
        self.backend = backend

    def current_version(self) -> int:
        """Create the ledger if needed and return the highest applied version."""
        try:
            with self.engine.begin() as conn:
                conn.execute(text(SCHEMA_INFO_DDL))
                version = conn.execute(
                    select(func.coalesce(func.max(SchemaInfoModel.version), 0))
                ).scalar()
        except SQLAlchemyError as e:
            raise MigrationError(f"cannot read schema version: {e}", version=0) from e
        return int(version or 0)

    def run(self) -> int:
        """
        Apply every migration newer than the ledger.

        Returns:
            Number of migrations applied by this call
        """
        version = self.current_version()
        pending = [m for m in self.migrations if m.version > version]
        logger.debug(f"[{self.backend}] schema at version {version}, {len(pending)} pending")

        for migration in pending:
            self._apply(migration)

        if pending:
            logger.info(f"[{self.backend}] schema migrated from version {version} to {pending[-1].version}")
        return len(pending)

    def _apply(self, migration: Migration) -> None:
        logger.info(f"[{self.backend}] applying migration {migration.version} ({migration.name})")
        table = SchemaInfoModel.__table__
        try:
            with self.engine.begin() as conn:
                for statement in migration.statements:
                    conn.execute(text(statement))
                stmt = self._insert(table).values(
                    version=migration.version,
                    updated_at=to_storage_time(utcnow()),
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=[table.c.version],
                    set_={"updated_at": stmt.excluded.updated_at},
                )
                conn.execute(stmt)
        except SQLAlchemyError as e:
            logger.error(f"[{self.backend}] migration {migration.version} ({migration.name}) failed: {e}")
            raise MigrationError(
                f"failed to run migration {migration.version} ({migration.name}): {e}",
                version=migration.version,
            ) from e
        record_migration_applied(self.backend)
