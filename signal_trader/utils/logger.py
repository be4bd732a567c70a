"""
Logging configuration
Colored console output, rotating file output and redaction of signed request material
"""

import logging
import re
import sys
from datetime import datetime
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Iterable, Optional


# Third-party loggers that are too chatty at INFO
NOISY_LOGGERS = ("aiohttp.access", "aiohttp.client", "asyncio")

FILE_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s'

# signature=..., X-BAPI-SIGN: ..., api_secret='...'
SECRET_PATTERN = re.compile(
    r"(?P<name>signature|X-BAPI-SIGN|X-BAPI-API-KEY|X-MBX-APIKEY|api_key|api_secret)"
    r"(?P<sep>['\"]?\s*[=:]\s*['\"]?)"
    r"(?P<value>[A-Za-z0-9_\-]{6,})",
    re.IGNORECASE,
)


class RedactingFilter(logging.Filter):
    """Masks signatures and key material that end up in log messages"""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = SECRET_PATTERN.sub(
            lambda m: f"{m.group('name')}{m.group('sep')}{m.group('value')[:4]}***", message
        )
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


class ColoredFormatter(logging.Formatter):
    """Colored console output: time, level, component, message"""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
        'RESET': '\033[0m'
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record):
        if self.use_color:
            color = self.COLORS.get(record.levelname, self.COLORS['RESET'])
            reset = self.COLORS['RESET']
        else:
            color = reset = ""

        clock = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')
        component = record.name.rsplit(".", 1)[-1]
        line = f"{color}[{clock}] {record.levelname:8}{reset} | {component:<22} | {record.getMessage()}"

        if record.exc_info:
            line += f"\n{self.formatException(record.exc_info)}"
        return line


def _console_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ColoredFormatter(use_color=sys.stdout.isatty()))
    return handler


def _file_handler(log_file: str, max_size_mb: int, backup_count: int) -> logging.Handler:
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_file,
        maxBytes=max_size_mb * 1024 * 1024,
        backupCount=backup_count
    )
    handler.setFormatter(logging.Formatter(FILE_FORMAT))
    return handler


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    max_size_mb: int = 50,
    backup_count: int = 5,
    quiet: Iterable[str] = NOISY_LOGGERS,
) -> logging.Logger:
    """
    Configure the root logger for the engine

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path for a rotating log file
        max_size_mb: Size at which the file rotates
        backup_count: Rotated files kept
        quiet: Logger names capped at WARNING

    Returns:
        Root logger instance
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper()))
    root.handlers.clear()

    handlers = [_console_handler()]
    if log_file:
        handlers.append(_file_handler(log_file, max_size_mb, backup_count))

    redactor = RedactingFilter()
    for handler in handlers:
        handler.setLevel(logging.DEBUG)
        handler.addFilter(redactor)
        root.addHandler(handler)

    for name in quiet:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root
