"""
Open the configured chat storage, bring its schema up to date, and report.

    python -m chatstore
"""

import json
import logging
import sys

from chatstore.config import settings
from chatstore.errors import ChatStorageError
from chatstore.logging_utils import setup_logging
from chatstore.storage import open_chat_storage

logger = logging.getLogger(__name__)


def main() -> int:
    setup_logging(settings.LOG_LEVEL)
    try:
        repository = open_chat_storage()
    except ChatStorageError as e:
        logger.error(f"Chat storage unavailable: {e}")
        return 1

    try:
        healthy = repository.check_health()
        stats = repository.get_storage_statistics()
        report = {
            "backend": repository.backend,
            "schema_version": repository.get_schema_version(),
            "healthy": healthy,
            **stats.model_dump(),
        }
    finally:
        repository.close()

    print(json.dumps(report))
    return 0 if healthy else 1


if __name__ == "__main__":
    sys.exit(main())
