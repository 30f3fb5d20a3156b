"""
Tests for structured logging.
"""

import json
import logging

import pytest

from chatstore.logging_utils import (
    CustomJsonFormatter,
    get_message_id,
    ingestion_context,
    setup_logging,
)


def make_record(msg="hello"):
    return logging.LogRecord("chatstore.ingest", logging.INFO, __file__, 1, msg, None, None)


@pytest.fixture
def formatter():
    return CustomJsonFormatter('%(ts)s %(level)s %(name)s %(message)s')


class TestIngestionContext:
    """Test the message id context."""

    def test_sets_and_resets(self):
        assert get_message_id() is None
        with ingestion_context("MSG1"):
            assert get_message_id() == "MSG1"
        assert get_message_id() is None

    def test_resets_on_error(self):
        with pytest.raises(RuntimeError):
            with ingestion_context("MSG1"):
                raise RuntimeError("boom")
        assert get_message_id() is None


class TestCustomJsonFormatter:
    """Test JSON output fields."""

    def test_fields(self, formatter):
        out = json.loads(formatter.format(make_record()))

        assert out["message"] == "hello"
        assert out["level"] == "INFO"
        assert out["name"] == "chatstore.ingest"
        assert out["ts"].endswith("Z")
        assert "message_id" not in out

    def test_message_id_from_context(self, formatter):
        with ingestion_context("3EB0ABC"):
            out = json.loads(formatter.format(make_record()))
        assert out["message_id"] == "3EB0ABC"


class TestSetupLogging:
    """Test root logger configuration."""

    @pytest.fixture(autouse=True)
    def restore_root(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        engine_level = logging.getLogger("sqlalchemy.engine").level
        yield
        root.handlers = handlers
        root.setLevel(level)
        logging.getLogger("sqlalchemy.engine").setLevel(engine_level)

    def test_json_handler_installed(self):
        logger = setup_logging("info")

        assert logger.level == logging.INFO
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, CustomJsonFormatter)
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING

    def test_debug_keeps_sqlalchemy_verbose(self):
        setup_logging("DEBUG")
        assert logging.getLogger("sqlalchemy.engine").level == logging.INFO
