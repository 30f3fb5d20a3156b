import base64
import logging
import os
import secrets
import sys
from typing import Optional

import bcrypt
from sqlalchemy import text
from sqlalchemy.engine import URL, Engine, make_url
from sqlalchemy.exc import ArgumentError, SQLAlchemyError

from chatstore.config import settings
from chatstore.errors import StorageConnectionError
from chatstore.models import AppUserModel
from chatstore.repository import REPOSITORIES, ChatStorageRepository, SQLChatStorageRepository
from chatstore.schemas import to_storage_time, utcnow

logger = logging.getLogger(__name__)

DEFAULT_ADMIN_USERNAME = "admin"


def normalize_storage_uri(uri: str) -> str:
    """
    Turn the accepted URI spellings into a SQLAlchemy URL string.

    - postgres://... and postgresql://... use the psycopg driver
    - file:path?opts (Go-style SQLite DSN) becomes sqlite:///path
    """
    lowered = uri.lower()
    if lowered.startswith("postgres://"):
        return "postgresql+psycopg://" + uri[len("postgres://"):]
    if lowered.startswith("postgresql://"):
        return "postgresql+psycopg://" + uri[len("postgresql://"):]
    if lowered.startswith("file:"):
        path = uri[len("file:"):].split("?", 1)[0]
        if path in ("", ":memory:"):
            return "sqlite://"
        return f"sqlite:///{path}"
    return uri


def create_storage_engine(uri: Optional[str] = None) -> Engine:
    """
    Create the engine for uri (default: CHAT_STORAGE_URI) and check it answers.

    Raises:
        StorageConnectionError: unsupported URI or unreachable backend
    """
    uri = uri or settings.CHAT_STORAGE_URI
    try:
        url: URL = make_url(normalize_storage_uri(uri))
    except ArgumentError as e:
        raise StorageConnectionError(f"invalid chat storage URI: {e}") from e

    repository_cls = REPOSITORIES.get(url.get_backend_name())
    if repository_cls is None:
        raise StorageConnectionError(f"unsupported chat storage backend: {url.get_backend_name()}")

    if url.get_backend_name() == "sqlite" and url.database not in (None, "", ":memory:"):
        folder = os.path.dirname(url.database)
        if folder:
            os.makedirs(folder, exist_ok=True)

    logger.debug(f"Creating chat storage engine: {url.render_as_string(hide_password=True)}")
    engine = repository_cls.build_engine(
        url,
        max_open_conns=settings.DB_MAX_OPEN_CONNS,
        max_idle_conns=settings.DB_MAX_IDLE_CONNS,
        echo=settings.DB_ECHO,
        foreign_keys=settings.CHAT_STORAGE_ENABLE_FOREIGN_KEYS,
    )

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        engine.dispose()
        raise StorageConnectionError(f"failed to ping {url.get_backend_name()} chat storage: {e}") from e
    return engine


def repository_for(engine: Engine) -> SQLChatStorageRepository:
    """Pick the adapter matching the engine's dialect."""
    repository_cls = REPOSITORIES[engine.dialect.name]
    if engine.dialect.name == "sqlite":
        return repository_cls(engine, foreign_keys=settings.CHAT_STORAGE_ENABLE_FOREIGN_KEYS)
    return repository_cls(engine)


def open_chat_storage(uri: Optional[str] = None) -> ChatStorageRepository:
    """
    Open chat storage ready for use: connect, migrate, seed.

    Raises:
        StorageConnectionError: backend unreachable
        MigrationError: schema could not be brought up to date
    """
    engine = create_storage_engine(uri)
    repository = repository_for(engine)
    try:
        repository.initialize_schema()
    except Exception:
        repository.close()
        raise

    if settings.SEED_DEFAULT_ADMIN:
        password = seed_default_admin(repository)
        if password:
            # Shown once on the console, never in the log stream
            print(
                f"Default admin credentials -> username: {DEFAULT_ADMIN_USERNAME}, password: {password}",
                file=sys.stderr,
            )
    return repository


def seed_default_admin(repository: SQLChatStorageRepository) -> Optional[str]:
    """
    Create an "admin" user with a random password when app_users is empty.

    Best effort: any failure is logged as a warning and startup continues.
    The password is returned, not logged; open_chat_storage prints it to stderr.

    Returns:
        The generated password, or None if nothing was seeded
    """
    try:
        with repository.SessionLocal.begin() as db:
            count = db.query(AppUserModel).count()
            if count > 0:
                return None

            # URL-safe base64 without padding for readability
            password = base64.urlsafe_b64encode(secrets.token_bytes(16)).decode().rstrip("=")
            password_hash = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")
            now = to_storage_time(utcnow())
            db.add(AppUserModel(
                username=DEFAULT_ADMIN_USERNAME,
                password_hash=password_hash,
                role="admin",
                enabled=True,
                created_at=now,
                updated_at=now,
            ))
    except SQLAlchemyError as e:
        logger.warning(f"Skipping admin seed, cannot write app_users: {e}")
        return None

    logger.warning(f"Seeded default admin user '{DEFAULT_ADMIN_USERNAME}' with a generated password")
    return password
