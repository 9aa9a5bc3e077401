#!/usr/bin/env python3
"""
cosign-agent logging.

Every module asks for its logger through ``get_logger(__name__)``. Each logger
gets a console handler and a file handler (``$COSIGN_LOG_DIR/cosign.log``,
default ``logs/``). Session context passed through ``extra=`` is rendered as
a ``[client=... op=... conn=... attempt=...]`` prefix:

    logger.warning("Reconnecting", extra={"client_id": "cli123", "attempt": 2})
"""

from __future__ import annotations
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from common.envelope import Envelope

LOG_FILE_NAME = "cosign.log"

CONSOLE_FORMAT = '[%(levelname)-8s][%(asctime)s][%(name)-5s]: %(message)s'
FILE_FORMAT = '%(asctime)s | %(name)-30s | %(levelname)-8s | %(message)s'

# record attribute -> label in the context prefix
_CONTEXT_FIELDS = (
    ("client_id", "client"),
    ("op_type", "op"),
    ("connection_id", "conn"),
    ("attempt", "attempt"),
)

_LEVEL_COLORS = {
    'DEBUG': '\033[36m',
    'INFO': '\033[32m',
    'WARNING': '\033[33m',
    'ERROR': '\033[31m',
    'CRITICAL': '\033[35m',
}
_RESET = '\033[0m'


# ========================================
#           FORMATTERS
# ========================================

def _context_prefix(record: logging.LogRecord) -> str:
    parts = []
    for attr, label in _CONTEXT_FIELDS:
        value = getattr(record, attr, None)
        if value is not None and value != "":
            parts.append(f"{label}={value}")
    return f"[{' '.join(parts)}] " if parts else ""


class GenericFormatter(logging.Formatter):
    """Plain formatter that prefixes the session context.

    Handlers share one LogRecord, so the prefix is applied to a copy.
    """

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        prefix = _context_prefix(record)
        if not prefix:
            return record
        copy = logging.makeLogRecord(record.__dict__)
        copy.msg = f"{prefix}{record.getMessage()}"
        copy.args = None
        return copy

    def format(self, record: logging.LogRecord) -> str:
        return super().format(self.prepare(record))


class ColoredFormatter(GenericFormatter):
    """Console formatter: context prefix plus an ANSI-colored level name"""

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        prepared = super().prepare(record)
        color = _LEVEL_COLORS.get(record.levelname)
        if color is None:
            return prepared
        if prepared is record:
            prepared = logging.makeLogRecord(record.__dict__)
        prepared.levelname = f"{color}{record.levelname}{_RESET}"
        return prepared


# ========================================
#           LOGGER SETUP
# ========================================

_loggers_configured = set()


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """Return the logger for ``name``, attaching handlers the first time it is asked for."""
    logger = logging.getLogger(name)
    if name not in _loggers_configured:
        _configure_logger(logger, level)
        _loggers_configured.add(name)
    return logger


def configure_root_logging(level: str = "INFO") -> None:
    """Route library loggers (websockets, asyncio) through the same handlers. Call once at startup."""
    _configure_logger(logging.getLogger(), level)


def set_level(level: str) -> None:
    """Apply a log level to every logger configured so far."""
    log_level = _get_log_level(level)
    logging.getLogger().setLevel(log_level)
    for name in _loggers_configured:
        logging.getLogger(name).setLevel(log_level)


def _configure_logger(logger: logging.Logger, level: Optional[str] = None) -> None:
    logger.setLevel(_get_log_level(level))
    logger.handlers.clear()
    logger.addHandler(_console_handler(colored=_is_development() and _supports_color()))
    logger.addHandler(_file_handler())
    # module loggers already write to both handlers
    logger.propagate = False


def _get_log_level(level: Optional[str] = None) -> int:
    name = level or os.getenv('COSIGN_LOG_LEVEL')
    if name:
        return getattr(logging, name.upper(), logging.INFO)
    return logging.DEBUG if _is_development() else logging.INFO


def _is_development() -> bool:
    return (
        os.getenv('PYTHON_ENV', '').lower() in ('dev', 'development')
        or 'pytest' in sys.modules
        or __debug__
    )


def _console_handler(colored: bool) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    if colored:
        handler.setFormatter(ColoredFormatter(fmt=CONSOLE_FORMAT, datefmt='%H:%M:%S'))
    else:
        handler.setFormatter(GenericFormatter(fmt=CONSOLE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
    return handler


def log_file_path() -> Path:
    return Path(os.getenv('COSIGN_LOG_DIR', 'logs')) / LOG_FILE_NAME


def _file_handler() -> logging.Handler:
    path = log_file_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding='utf-8')
    handler.setFormatter(GenericFormatter(fmt=FILE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
    return handler


def _supports_color() -> bool:
    if not (hasattr(sys.stdout, "isatty") and sys.stdout.isatty()):
        return False
    if os.getenv("TERM", "") == "dumb":
        return False
    if sys.platform == "win32":
        return any(os.getenv(var) for var in ("ANSICON", "WT_SESSION")) or os.getenv("TERM_PROGRAM") == "vscode"
    return True


# ========================================
#           ENVELOPE CONTEXT
# ========================================

def log_envelope(logger: logging.Logger, level: str, message: str,
                 envelope: Optional["Envelope"] = None,
                 **context: Any) -> None:
    """
    Log a line about a wire message, with its routing fields as context.

    Example:
        log_envelope(logger, "info", "Unknown operation type", envelope=env)
    """
    extra: Dict[str, Any] = {}
    if envelope is not None:
        extra['op_type'] = envelope.operation_type
        extra['connection_id'] = envelope.connection_id
        extra['source_id'] = envelope.source_id
    extra.update(context)
    getattr(logger, level.lower())(message, extra=extra)
