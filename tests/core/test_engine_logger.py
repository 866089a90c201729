"""
Unit tests for Logger functionality.

Tests formatter and handler strategies, logger configuration and the
position-scoped adapter.
"""

import io
import logging
import logging.handlers
import tempfile
import unittest
from datetime import date
from pathlib import Path

from risk_engine.core.logger import (
    CompactLogFormatter,
    EngineLogFormatter,
    LoggerManager,
    RotatingFileLogHandler,
    StreamLogHandler,
    create_engine_logger,
    daily_log_path,
    get_module_logger,
    get_position_logger,
    parse_log_level,
)


class TestFormatters(unittest.TestCase):
    """Test cases for formatter strategies."""

    def test_compact_formatter_module_column(self):
        with_module = CompactLogFormatter(include_module=True).get_formatter()
        without_module = CompactLogFormatter(include_module=False).get_formatter()

        self.assertIn("%(name)s", with_module._fmt)
        self.assertNotIn("%(name)s", without_module._fmt)

    def test_engine_formatter(self):
        formatter = EngineLogFormatter().get_formatter()

        self.assertIn("%(funcName)", formatter._fmt)
        self.assertIn("%(levelname)", formatter._fmt)


class TestHandlers(unittest.TestCase):
    """Test cases for handler strategies."""

    def test_stream_handler_writes_to_given_stream(self):
        stream = io.StringIO()
        handler = StreamLogHandler(level=logging.WARNING, stream=stream).create_handler(
            CompactLogFormatter(include_module=False).get_formatter()
        )
        record = logging.LogRecord("risk_engine.t", logging.WARNING, __file__, 1, "lease lost", None, None)

        handler.handle(record)

        self.assertEqual(handler.level, logging.WARNING)
        self.assertIn("WARNING - lease lost", stream.getvalue())

    def test_file_handler_creates_directory(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            log_file = Path(temp_dir) / "nested" / "engine.log"
            handler = RotatingFileLogHandler(
                str(log_file), max_bytes=1024, backup_count=2
            ).create_handler(CompactLogFormatter().get_formatter())
            try:
                self.assertIsInstance(handler, logging.handlers.RotatingFileHandler)
                self.assertTrue(log_file.parent.exists())
                self.assertEqual(handler.maxBytes, 1024)
            finally:
                handler.close()

    def test_daily_log_path(self):
        path = daily_log_path("logs", "risk_engine", date(2024, 3, 9))

        self.assertEqual(path, Path("logs") / "risk_engine_20240309.log")


class TestLoggerManager(unittest.TestCase):
    """Test cases for LoggerManager."""

    def test_logger_before_configuration(self):
        manager = LoggerManager("risk_engine.test_unconfigured")

        self.assertFalse(manager.is_configured)
        with self.assertRaises(RuntimeError):
            _ = manager.logger

    def test_reconfiguration_replaces_handlers(self):
        manager = LoggerManager("risk_engine.test_reconfigure")
        handlers = {"console": StreamLogHandler()}

        manager.configure(handlers=handlers)
        logger = manager.configure(handlers=handlers)

        self.assertEqual(len(logger.handlers), 1)
        self.assertIs(manager.logger, logger)

    def test_set_level(self):
        manager = LoggerManager("risk_engine.test_levels")
        manager.configure(handlers={"console": StreamLogHandler()})

        manager.set_level(logging.ERROR)

        self.assertEqual(manager.logger.level, logging.ERROR)
        self.assertEqual(manager.handler("console").level, logging.ERROR)
        self.assertIsNone(manager.handler("file"))


class TestLoggerFactories(unittest.TestCase):
    """Test cases for the logger factory functions."""

    def test_parse_log_level(self):
        self.assertEqual(parse_log_level("debug"), logging.DEBUG)
        self.assertEqual(parse_log_level("bogus"), logging.INFO)

    def test_console_only_engine_logger(self):
        logger = create_engine_logger("risk_engine_console_test", "WARNING", log_dir=None)

        self.assertEqual(logger.level, logging.WARNING)
        self.assertEqual(len(logger.handlers), 1)

    def test_engine_logger_quiets_http_loggers(self):
        create_engine_logger(
            "risk_engine_quiet_test", "DEBUG", log_dir=None, quiet_loggers=("risk_engine_test_http",)
        )

        self.assertEqual(logging.getLogger("risk_engine_test_http").level, logging.WARNING)

    def test_engine_logger_with_file(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            logger = create_engine_logger("risk_engine_file_test", "DEBUG", log_dir=temp_dir)
            try:
                self.assertEqual(len(logger.handlers), 2)
                self.assertTrue(any(Path(temp_dir).glob("risk_engine_file_test_*.log")))
            finally:
                for handler in list(logger.handlers):
                    logger.removeHandler(handler)
                    handler.close()

    def test_module_logger_is_namespaced(self):
        self.assertEqual(get_module_logger("exit_guard").name, "risk_engine.exit_guard")

    def test_position_logger_prefixes_messages(self):
        adapter = get_position_logger("exit_guard", "pos-9", "BTCUSDT")

        message, _ = adapter.process("closing", {})

        self.assertEqual(message, "[pos-9 BTCUSDT] closing")
        self.assertEqual(adapter.logger.name, "risk_engine.exit_guard")


if __name__ == "__main__":
    unittest.main()
