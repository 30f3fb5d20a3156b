"""
Client-server backend on PostgreSQL (psycopg 3 driver).
"""

import logging

from sqlalchemy import create_engine, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.engine import URL, Engine
from sqlalchemy.orm import Session

from chatstore.migrations import POSTGRES_MIGRATIONS
from chatstore.repository.base import SQLChatStorageRepository, like_pattern

logger = logging.getLogger(__name__)


class PostgresRepository(SQLChatStorageRepository):
    """Chat storage on PostgreSQL."""

    backend = "postgres"
    migrations = POSTGRES_MIGRATIONS
    _insert = staticmethod(pg_insert)

    @classmethod
    def build_engine(
        cls,
        url: URL,
        max_open_conns: int = 25,
        max_idle_conns: int = 5,
        echo: bool = False,
        foreign_keys: bool = True,
    ) -> Engine:
        """Create a pooled engine; foreign keys are always enforced by PostgreSQL."""
        return create_engine(
            url,
            pool_size=max_idle_conns,
            max_overflow=max(max_open_conns - max_idle_conns, 0),
            pool_pre_ping=True,
            echo=echo,
        )

    def _icontains(self, column, value: str):
        return column.ilike(like_pattern(value), escape="\\")

    def _ordered(self, column):
        # Byte order, matching SQLite's BINARY collation
        return column.collate("C")

    def _truncate(self, db: Session) -> None:
        db.execute(text("TRUNCATE TABLE messages, chats RESTART IDENTITY CASCADE"))

    def _table_exists(self, db: Session, table_name: str) -> bool:
        count = db.execute(
            text(
                "SELECT COUNT(*) FROM information_schema.tables "
                "WHERE table_schema = current_schema() AND table_name = :name"
            ),
            {"name": table_name},
        ).scalar()
        return bool(count)
