"""
Error kinds raised by the chat storage layer.

Lookups that find nothing return None instead of raising.
"""

from typing import Optional


class ChatStorageError(Exception):
    """Base class for all chat storage errors."""

    def __init__(self, message: str, step: Optional[str] = None):
        super().__init__(message)
        self.message = message
        # Set by the ingestion translator to name the failing step
        self.step = step

    def __str__(self):
        if self.step:
            return f"{self.step} failed: {self.message}"
        return self.message


class StorageConnectionError(ChatStorageError):
    """Backend unreachable at startup. Fatal."""


class MigrationError(ChatStorageError):
    """A versioned migration or its ledger write failed. Fatal."""

    def __init__(self, message: str, version: int):
        super().__init__(message)
        self.version = version


class ConstraintViolationError(ChatStorageError):
    """Foreign-key or uniqueness violation reported by the backend."""


class TransientQueryError(ChatStorageError):
    """Any other backend failure on read or write. Not retried."""


class InvalidInputError(ChatStorageError, ValueError):
    """Malformed event or argument, rejected before anything is written."""
