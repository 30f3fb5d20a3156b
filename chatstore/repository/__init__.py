from chatstore.repository.base import ChatStorageRepository, SQLChatStorageRepository
from chatstore.repository.postgres import PostgresRepository
from chatstore.repository.sqlite import SQLiteRepository

# SQLAlchemy backend name -> adapter
REPOSITORIES = {
    "sqlite": SQLiteRepository,
    "postgresql": PostgresRepository,
}

__all__ = [
    "ChatStorageRepository",
    "SQLChatStorageRepository",
    "SQLiteRepository",
    "PostgresRepository",
    "REPOSITORIES",
]
