"""Tests for structured logging behavior."""

from __future__ import annotations

import json
import logging
import tempfile
from pathlib import Path
import unittest

import structlog

from chatstream.logging_utils import _build_formatter, configure_logging


def _record(name: str, **extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        name=name,
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg="pipeline.turn.failed",
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class StructuredFormatterTests(unittest.TestCase):
    def test_extra_fields_are_rendered_as_json(self) -> None:
        formatter = _build_formatter(structured=True)
        record = _record(
            "chatstream.pipeline",
            event="pipeline.turn.failed",
            turn_id=3,
            error="Backend unavailable.",
        )
        data = json.loads(formatter.format(record))
        self.assertEqual(data["event"], "pipeline.turn.failed")
        self.assertEqual(data["turn_id"], 3)
        self.assertEqual(data["error"], "Backend unavailable.")
        self.assertEqual(data["level"], "warning")
        self.assertEqual(data["logger"], "chatstream.pipeline")

    def test_bound_context_is_merged(self) -> None:
        formatter = _build_formatter(structured=True)
        with structlog.contextvars.bound_contextvars(session_id="s1"):
            data = json.loads(formatter.format(_record("chatstream.pipeline")))
        self.assertEqual(data["session_id"], "s1")

    def test_plain_formatter_when_not_structured(self) -> None:
        formatter = _build_formatter(structured=False)
        self.assertNotIsInstance(formatter, structlog.stdlib.ProcessorFormatter)
        self.assertIn("pipeline.turn.failed", formatter.format(_record("chatstream.pipeline")))


class ConfigureLoggingTests(unittest.TestCase):
    """Validate configure_logging() handler setup behavior."""

    def setUp(self) -> None:
        # Preserve root logger state so tests do not pollute each other.
        root = logging.getLogger()
        self._original_level = root.level
        self._original_handlers = list(root.handlers)

    def tearDown(self) -> None:
        root = logging.getLogger()
        for handler in root.handlers:
            if handler not in self._original_handlers:
                handler.close()
        root.setLevel(self._original_level)
        root.handlers.clear()
        root.handlers.extend(self._original_handlers)

    def _stream_handlers(self) -> list[logging.Handler]:
        return [
            h
            for h in logging.getLogger().handlers
            if isinstance(h, logging.StreamHandler)
            and not isinstance(h, logging.FileHandler)
        ]

    def test_configure_logging_sets_root_level(self) -> None:
        configure_logging({"level": "DEBUG", "structured": False, "log_to_file": False})
        self.assertEqual(logging.getLogger().level, logging.DEBUG)

    def test_stderr_handler_is_warning_and_app_only(self) -> None:
        configure_logging({"level": "DEBUG", "structured": True, "log_to_file": False})
        handlers = self._stream_handlers()
        self.assertEqual(len(handlers), 1)
        handler = handlers[0]
        self.assertEqual(handler.level, logging.WARNING)
        self.assertIsInstance(handler.formatter, structlog.stdlib.ProcessorFormatter)
        self.assertTrue(handler.filter(_record("chatstream.client")))
        self.assertFalse(handler.filter(_record("httpx")))

    def test_noisy_loggers_set_to_warning(self) -> None:
        configure_logging({"level": "DEBUG", "structured": False, "log_to_file": False})
        for name in ("httpx", "httpcore"):
            self.assertEqual(logging.getLogger(name).level, logging.WARNING)

    def test_file_handler_created(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            log_path = Path(tmp) / "logs" / "test.log"
            configure_logging(
                {
                    "level": "INFO",
                    "structured": True,
                    "log_to_file": True,
                    "log_file_path": str(log_path),
                }
            )
            file_handlers = [
                h for h in logging.getLogger().handlers if isinstance(h, logging.FileHandler)
            ]
            self.assertEqual(len(file_handlers), 1)
            self.assertEqual(file_handlers[0].level, logging.INFO)
            self.assertTrue(log_path.exists())
            file_handlers[0].close()


if __name__ == "__main__":
    unittest.main()
