"""
Pytest configuration and shared fixtures.

SQLite tests run against a fresh database file per test. The same suites run
against PostgreSQL when CHATSTORE_TEST_POSTGRES_URI points at a scratch
database; otherwise the postgres parametrizations are skipped.
"""

import os
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import make_url, text

# Clear settings cache before any chatstore imports to ensure test env vars are used
from chatstore.config import get_settings
get_settings.cache_clear()

from chatstore.repository import PostgresRepository, SQLiteRepository
from chatstore.schemas import Chat, Message
from chatstore.storage import normalize_storage_uri

POSTGRES_URI = os.environ.get("CHATSTORE_TEST_POSTGRES_URI")

BASE_TIME = datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


def at(minutes: int) -> datetime:
    """BASE_TIME shifted by the given number of minutes."""
    return BASE_TIME + timedelta(minutes=minutes)


def make_chat(jid: str, name: str = "", minutes: int = 0, ephemeral: int = 0) -> Chat:
    return Chat(jid=jid, name=name, last_message_time=at(minutes), ephemeral_expiration=ephemeral)


def make_message(
    message_id: str,
    chat_jid: str,
    content: str = "hello",
    minutes: int = 0,
    media_type: str = "",
    is_from_me: bool = False,
    sender: str = "628111@s.whatsapp.net",
) -> Message:
    return Message(
        id=message_id,
        chat_jid=chat_jid,
        sender=sender,
        content=content,
        timestamp=at(minutes),
        is_from_me=is_from_me,
        media_type=media_type,
    )


def _drop_postgres_tables(repo: PostgresRepository) -> None:
    with repo.engine.begin() as conn:
        conn.execute(text("DROP TABLE IF EXISTS messages, chats, app_users, schema_info CASCADE"))


@pytest.fixture
def sqlite_repo(tmp_path):
    """Unmigrated SQLite repository on a fresh file."""
    engine = SQLiteRepository.build_engine(make_url(f"sqlite:///{tmp_path / 'chatstore.db'}"))
    repo = SQLiteRepository(engine)
    yield repo
    repo.close()


@pytest.fixture
def postgres_repo():
    """Unmigrated PostgreSQL repository on an emptied database."""
    if not POSTGRES_URI:
        pytest.skip("CHATSTORE_TEST_POSTGRES_URI not set")
    engine = PostgresRepository.build_engine(make_url(normalize_storage_uri(POSTGRES_URI)))
    repo = PostgresRepository(engine)
    _drop_postgres_tables(repo)
    yield repo
    _drop_postgres_tables(repo)
    repo.close()


@pytest.fixture(params=["sqlite", "postgres"])
def fresh_repo(request):
    """Unmigrated repository, once per backend."""
    return request.getfixturevalue(f"{request.param}_repo")


@pytest.fixture
def repo(fresh_repo):
    """Migrated repository, once per backend."""
    fresh_repo.initialize_schema()
    return fresh_repo
