"""Chat-history persistence: chats and messages on SQLite or PostgreSQL."""

__version__ = "1.0.0"
