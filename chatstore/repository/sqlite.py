"""
Embedded single-file backend.

Connections are set up so that:
- foreign keys are enforced (ON DELETE CASCADE depends on it)
- SQLAlchemy, not pysqlite, issues BEGIN, so DDL in migrations is transactional
- a Unicode-aware lower() is available; SQLite's own only folds ASCII
"""

import logging
from typing import Optional

from sqlalchemy import create_engine, event, func, text
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import URL, Engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import QueuePool

from chatstore.migrations import SQLITE_MIGRATIONS
from chatstore.models import ChatModel, MessageModel
from chatstore.repository.base import SQLChatStorageRepository, like_pattern

logger = logging.getLogger(__name__)


def _unicode_lower(value: Optional[str]) -> Optional[str]:
    return value.lower() if isinstance(value, str) else value


def _on_connect(dbapi_connection, connection_record):
    # Stop pysqlite from managing transactions; see _on_begin
    dbapi_connection.isolation_level = None
    dbapi_connection.create_function("unicode_lower", 1, _unicode_lower, deterministic=True)
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
    finally:
        cursor.close()


def _enable_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA foreign_keys=ON")
    finally:
        cursor.close()


def _on_begin(conn):
    conn.exec_driver_sql("BEGIN")


def install_connection_hooks(engine: Engine, foreign_keys: bool = True) -> None:
    """Register the connection setup above on engine. Safe to call twice."""
    hooks = [("connect", _on_connect), ("begin", _on_begin)]
    if foreign_keys:
        hooks.append(("connect", _enable_foreign_keys))
    installed = False
    for identifier, fn in hooks:
        if not event.contains(engine, identifier, fn):
            event.listen(engine, identifier, fn)
            installed = True
    if installed:
        # Connections opened before the hooks existed lack the setup
        engine.dispose()


class SQLiteRepository(SQLChatStorageRepository):
    """Chat storage on SQLite."""

    backend = "sqlite"
    migrations = SQLITE_MIGRATIONS
    _insert = staticmethod(sqlite_insert)

    def __init__(self, engine: Engine, foreign_keys: bool = True):
        install_connection_hooks(engine, foreign_keys=foreign_keys)
        super().__init__(engine)

    @classmethod
    def build_engine(
        cls,
        url: URL,
        max_open_conns: int = 25,
        max_idle_conns: int = 5,
        echo: bool = False,
        foreign_keys: bool = True,
    ) -> Engine:
        """
        Create an engine for url with the connection setup installed.

        check_same_thread=False lets pooled connections move between threads.
        """
        options = {"connect_args": {"check_same_thread": False}, "echo": echo}
        if url.database in (None, "", ":memory:"):
            # The database lives in a single connection: keep it open and
            # hand it to one caller at a time
            options["poolclass"] = QueuePool
            options["pool_size"] = 1
            options["max_overflow"] = 0
        else:
            options["pool_size"] = max_idle_conns
            options["max_overflow"] = max(max_open_conns - max_idle_conns, 0)

        engine = create_engine(url, **options)
        install_connection_hooks(engine, foreign_keys=foreign_keys)
        return engine

    def _icontains(self, column, value: str):
        return func.unicode_lower(column).like(like_pattern(value.lower()), escape="\\")

    def _truncate(self, db: Session) -> None:
        db.query(MessageModel).delete(synchronize_session=False)
        db.query(ChatModel).delete(synchronize_session=False)
        # sqlite_sequence only exists once an AUTOINCREMENT table has been created
        if self._table_exists(db, "sqlite_sequence"):
            db.execute(text("DELETE FROM sqlite_sequence WHERE name IN ('messages', 'chats')"))

    def _table_exists(self, db: Session, table_name: str) -> bool:
        count = db.execute(
            text("SELECT COUNT(*) FROM sqlite_master WHERE type='table' AND name=:name"),
            {"name": table_name},
        ).scalar()
        return bool(count)
