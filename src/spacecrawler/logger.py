"""
Logging module for spacecrawler.
Console and rotating file output tagged with the space being watched, plus
the size/progress formatting shared by capture and CLI log lines.
"""

import functools
import logging
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


LOGGER_NAME = 'spacecrawler'

# Chatty third-party loggers, kept at WARNING unless DEBUG is requested
NOISY_LOGGERS = ('aiohttp.access', 'aiohttp.client', 'aiohttp.internal', 'asyncio')


class Colors:
    RESET = "\033[0m"
    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    MAGENTA = "\033[95m"
    CYAN = "\033[96m"
    GRAY = "\033[90m"


class ConsoleFormatter(logging.Formatter):
    """Short console lines: time, level, ``[space]`` tag, message."""

    LEVEL_COLORS = {
        logging.DEBUG: Colors.GRAY,
        logging.INFO: Colors.GREEN,
        logging.WARNING: Colors.YELLOW,
        logging.ERROR: Colors.RED,
        logging.CRITICAL: Colors.MAGENTA,
    }

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors

    def _paint(self, text: str, color: str) -> str:
        return f"{color}{text}{Colors.RESET}" if self.use_colors else text

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')
        level = self._paint(f"{record.levelname:8}", self.LEVEL_COLORS.get(record.levelno, Colors.RESET))

        space = getattr(record, 'space', None)
        space_str = self._paint(f"[{space}]", Colors.CYAN) + " " if space else ""

        message = f"{self._paint(timestamp, Colors.GRAY)} {level} {space_str}{record.getMessage()}"
        if record.exc_info:
            message += f"\n{self.formatException(record.exc_info)}"
        return message


class FileFormatter(logging.Formatter):
    """Pipe-separated file lines; the space column is ``-`` for crawler-wide messages."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime('%Y-%m-%d %H:%M:%S')
        space = getattr(record, 'space', None) or '-'
        message = f"{timestamp} | {record.levelname:8} | {space:16} | {record.name} | {record.getMessage()}"
        if record.exc_info:
            message += f"\n{self.formatException(record.exc_info)}"
        return message


class SpaceLoggerAdapter(logging.LoggerAdapter):
    """Tags every record with the space ID it concerns."""

    def __init__(self, logger: logging.Logger, space_id: str):
        super().__init__(logger, {'space': space_id})

    def process(self, msg, kwargs):
        kwargs.setdefault('extra', {})['space'] = self.extra['space']
        return msg, kwargs


def format_size(num_bytes: float) -> str:
    """Human-readable byte count, e.g. ``1.50 MB``."""
    size = float(num_bytes)
    for unit in ('B', 'KB', 'MB', 'GB'):
        if size < 1024:
            return f"{size:.2f} {unit}"
        size /= 1024
    return f"{size:.2f} TB"


def format_progress(chunks_written: int, total_chunks: int, bytes_written: int) -> str:
    """Capture progress line, e.g. ``12/40 chunks (30%), 1.20 MB``."""
    percent = f" ({chunks_written * 100 // total_chunks}%)" if total_chunks else ""
    return f"{chunks_written}/{total_chunks} chunks{percent}, {format_size(bytes_written)}"


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    max_size_mb: int = 10,
    backup_count: int = 5
) -> logging.Logger:
    """
    Set up the crawler logger.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_file: Path to log file. If None, logs only to console.
        max_size_mb: Maximum log file size before rotation.
        backup_count: Number of backup log files to keep.

    Returns:
        Configured logger instance.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(log_level)
    logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(ConsoleFormatter(use_colors=sys.stdout.isatty()))
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=max_size_mb * 1024 * 1024,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setFormatter(FileFormatter())
        logger.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if log_level <= logging.DEBUG else logging.WARNING)

    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Crawler logger, or its ``spacecrawler.<name>`` child."""
    if name:
        return logging.getLogger(f'{LOGGER_NAME}.{name}')
    return logging.getLogger(LOGGER_NAME)


def get_space_logger(space_id: str, name: Optional[str] = None) -> SpaceLoggerAdapter:
    return SpaceLoggerAdapter(get_logger(name), space_id)


def log_operation(operation_name: str):
    """Log start, completion and failure of a coroutine."""
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            logger = get_logger()
            logger.info(f"Starting: {operation_name}")
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                logger.error(f"Failed: {operation_name} - {e}")
                raise
            logger.info(f"Completed: {operation_name}")
            return result
        return wrapper
    return decorator
