import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Iterator, Optional

from pythonjsonlogger import jsonlogger


# Context variable holding the message id of the event being ingested
message_id_ctx: ContextVar[Optional[str]] = ContextVar("message_id", default=None)


def get_message_id() -> Optional[str]:
    """Get the id of the message currently being ingested."""
    return message_id_ctx.get()


@contextmanager
def ingestion_context(message_id: Optional[str]) -> Iterator[None]:
    """Tag every log record emitted inside the block with message_id."""
    token = message_id_ctx.set(message_id)
    try:
        yield
    finally:
        message_id_ctx.reset(token)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter to ensure ISO-8601 timestamps and message_id."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        # Ensure timestamp is in ISO-8601 format with Z suffix
        if not log_record.get('ts'):
            now = datetime.now(timezone.utc)
            log_record['ts'] = now.strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        if 'message_id' not in log_record:
            msg_id = message_id_ctx.get()
            if msg_id:
                log_record['message_id'] = msg_id


def setup_logging(log_level: str = "INFO"):
    """
    Setup structured JSON logging for the chat storage layer.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logger = logging.getLogger()
    logger.setLevel(log_level.upper())

    # Remove existing handlers
    logger.handlers = []

    json_handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        '%(ts)s %(level)s %(name)s %(message)s'
    )
    json_handler.setFormatter(formatter)

    logger.addHandler(json_handler)

    # SQLAlchemy logs every statement at INFO; keep it quiet unless debugging
    sqlalchemy_level = logging.INFO if log_level.upper() == "DEBUG" else logging.WARNING
    for logger_name in ("sqlalchemy.engine", "sqlalchemy.pool"):
        logging.getLogger(logger_name).setLevel(sqlalchemy_level)

    return logger
