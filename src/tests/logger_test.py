import io
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from unittest.mock import patch

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from candle_trader.utils.logger import DotMsFormatter, LOG_FORMAT, resolve_level, setup_logger


def test_setup_logger_writes_to_console_and_rotating_file(tmp_path):
    log_path = tmp_path / "logs" / "pipeline.log"
    console = io.StringIO()
    with patch("sys.stdout", new=console):
        logger = setup_logger("logger_test.file", log_path, level=logging.DEBUG)
    try:
        file_handlers = [h for h in logger.handlers if isinstance(h, RotatingFileHandler)]
        assert len(file_handlers) == 1
        assert logger.level == logging.DEBUG

        logger.info("hello")
        file_handlers[0].flush()
        assert "INFO logger_test.file: hello" in log_path.read_text()
        assert "hello" in console.getvalue()

        # A second call does not stack handlers.
        assert setup_logger("logger_test.file", log_path) is logger
        assert len(logger.handlers) == 2
    finally:
        for handler in logger.handlers:
            handler.close()
        logger.handlers.clear()


def test_formatter_renders_milliseconds():
    formatter = DotMsFormatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S.%f")
    record = logging.LogRecord("x", logging.INFO, __file__, 1, "msg", None, None)
    record.created = 0.0
    record.msecs = 42.0

    stamp = formatter.formatTime(record, formatter.datefmt)

    assert stamp.endswith(".042")


def test_resolve_level_accepts_names_and_numbers():
    assert resolve_level("debug") == logging.DEBUG
    assert resolve_level(" Warning ") == logging.WARNING
    assert resolve_level(logging.ERROR) == logging.ERROR
    assert resolve_level("verbose") == logging.INFO


def test_setup_logger_level_name_and_rotation(tmp_path):
    log_path = tmp_path / "pipeline.log"
    with patch("sys.stdout", new=io.StringIO()):
        logger = setup_logger("logger_test.rotation", log_path, level="warning", max_bytes=1024, backup_count=2)
    try:
        assert logger.level == logging.WARNING
        fh = next(h for h in logger.handlers if isinstance(h, RotatingFileHandler))
        assert fh.maxBytes == 1024
        assert fh.backupCount == 2

        setup_logger("logger_test.rotation", log_path, level="DEBUG")
        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 2
    finally:
        for handler in logger.handlers:
            handler.close()
        logger.handlers.clear()
