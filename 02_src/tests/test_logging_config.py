"""Tests for structured logging."""

import json
import logging
import sys

from chatpair.logging_config import JSONFormatter, setup_logging


def make_record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="chatpair.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=10,
        msg="Matched with %s",
        args=("Bob",),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    """Tests for JSONFormatter."""

    def test_basic_fields(self):
        data = json.loads(JSONFormatter().format(make_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "chatpair.test"
        assert data["message"] == "Matched with Bob"
        assert "timestamp" in data

    def test_context_fields_included(self):
        """Test that extra= context ends up in the JSON line."""
        data = json.loads(
            JSONFormatter().format(make_record(participant_id="p1", session_id="s1"))
        )

        assert data["participant_id"] == "p1"
        assert data["session_id"] == "s1"
        assert "partner_id" not in data

    def test_exception_included(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = make_record()
            record.exc_info = sys.exc_info()

        data = json.loads(JSONFormatter().format(record))
        assert "ValueError: boom" in data["exception"]


class TestSetupLogging:
    """Tests for setup_logging()."""

    def test_file_handler(self, tmp_path):
        log_file = tmp_path / "logs" / "app.log"
        setup_logging("DEBUG", str(log_file))

        logging.getLogger("chatpair.test").info("hello", extra={"participant_id": "p1"})
        for handler in logging.getLogger().handlers:
            handler.flush()

        line = log_file.read_text(encoding="utf-8").strip().splitlines()[-1]
        assert json.loads(line)["participant_id"] == "p1"
        assert logging.getLogger("aiosqlite").level == logging.WARNING

        setup_logging("INFO", "")

    def test_console_only(self):
        setup_logging("WARNING", "")

        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert all(not isinstance(h, logging.FileHandler) for h in root.handlers)
