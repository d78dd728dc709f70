import io
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from datetime import datetime

LOG_FORMAT = '[%(asctime)s] %(levelname)s %(name)s: %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S.%f'

# Rotation: five 5 MB files per pipeline log.
MAX_LOG_BYTES = 5_000_000
LOG_BACKUPS = 5


class DotMsFormatter(logging.Formatter):
    """Timestamps with a dotted millisecond suffix: ``2026-01-01 00:00:00.042``."""

    def formatTime(self, record, datefmt=None):
        ct = datetime.fromtimestamp(record.created)
        ms = f'{int(record.msecs):03d}'
        if not datefmt:
            return ct.strftime("%Y-%m-%d %H:%M:%S") + '.' + ms
        head, sep, tail = datefmt.partition('%f')
        return ct.strftime(head) + (ms + ct.strftime(tail) if sep else '')


def resolve_level(level: int | str) -> int:
    """Map a config value such as ``"debug"`` or ``10`` to a logging level.

    Unknown names fall back to INFO.
    """
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logger(
    name: str,
    log_path: str | Path,
    level: int | str = logging.INFO,
    max_bytes: int = MAX_LOG_BYTES,
    backup_count: int = LOG_BACKUPS,
) -> logging.Logger:
    """
    Console + rotating-file logger for the pipeline.

    Components log through child loggers (``candle_trader.*``) or the logger
    handed to them, so one call on the package logger covers the process.
    Calling it again only updates the level.
    """
    log_path = Path(log_path)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(name)
    logger.setLevel(resolve_level(level))
    if logger.handlers:
        return logger

    formatter = DotMsFormatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    # Console handler: force UTF-8 so the console never raises
    # UnicodeEncodeError on Windows code pages.
    if hasattr(sys.stdout, "buffer"):
        utf8_stream = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", errors="replace")
    else:
        utf8_stream = sys.stdout
    ch = logging.StreamHandler(utf8_stream)
    ch.setFormatter(formatter)
    logger.addHandler(ch)

    fh = RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    fh.setFormatter(formatter)
    logger.addHandler(fh)

    return logger
