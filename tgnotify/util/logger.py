"""Shared logger with rich console formatting and rotating file output.

Every record emitted by the API process or the Celery notification workers is
also written to rotating files under ``logs/`` next to the package.  Files are
capped at **10 MB** each and up to **5** backups are kept.
"""

from __future__ import annotations

import logging
import logging.handlers
import re
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------
_PROJECT_ROOT = Path(__file__).resolve().parents[2]
_LOG_DIR = _PROJECT_ROOT / "logs"
_LOG_DIR.mkdir(parents=True, exist_ok=True)

# ---------------------------------------------------------------------------
# Rich console handler
# ---------------------------------------------------------------------------
TGNOTIFY_THEME = Theme(
    {
        "info": "cyan",
        "warning": "yellow",
        "error": "bold red",
        "debug": "dim white",
        "success": "bold green",
        "queue": "bold magenta",
        "db": "bold blue",
    }
)

console = Console(theme=TGNOTIFY_THEME)

_rich_handler = RichHandler(
    console=console,
    show_time=True,
    show_level=True,
    show_path=True,
    omit_repeated_times=False,
    log_time_format="%m/%d/%y %H:%M:%S",
    rich_tracebacks=True,
    tracebacks_show_locals=False,
    markup=True,
)
_rich_handler.setFormatter(logging.Formatter("%(message)s"))

# ---------------------------------------------------------------------------
# Rotating file handler
# ---------------------------------------------------------------------------
# Only the markup tags used by the helpers below; bracketed log prefixes such
# as ``[notifications-worker]`` are left alone.
_RICH_TAG_RE = re.compile(
    r"\[/?"
    r"(?:success|error|queue|db|"
    r"bold(?:\s+\w+)?|dim|italic|underline|strike)"
    r"\]",
    re.IGNORECASE,
)


class _PlainFileFormatter(logging.Formatter):
    """Formatter that strips Rich markup tags for plain-text log files."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        record = logging.makeLogRecord(record.__dict__)
        record.msg = _RICH_TAG_RE.sub("", record.getMessage())
        record.args = None
        return super().format(record)


_file_handler = logging.handlers.RotatingFileHandler(
    filename=_LOG_DIR / "tgnotify.log",
    maxBytes=10 * 1024 * 1024,
    backupCount=5,
    encoding="utf-8",
)
_file_handler.setFormatter(
    _PlainFileFormatter(
        fmt="%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
)
_file_handler.setLevel(logging.DEBUG)


# ---------------------------------------------------------------------------
# Logger setup helpers
# ---------------------------------------------------------------------------
def setup_logger(name: str = "tgnotify", level: int = logging.INFO) -> logging.Logger:
    """Set up and return a configured logger instance."""
    app_logger = logging.getLogger(name)
    app_logger.setLevel(level)

    if app_logger.handlers:
        return app_logger

    app_logger.addHandler(_rich_handler)
    app_logger.addHandler(_file_handler)
    app_logger.propagate = False
    return app_logger


def configure_framework_logging(level: int = logging.INFO) -> None:
    """Route uvicorn, fastapi and celery logs through the shared handlers."""
    for name in ("uvicorn", "uvicorn.error", "fastapi", "celery"):
        framework_logger = logging.getLogger(name)
        framework_logger.handlers.clear()
        framework_logger.addHandler(_rich_handler)
        framework_logger.addHandler(_file_handler)
        framework_logger.setLevel(level)
        framework_logger.propagate = False

    # python-telegram-bot and httpx log every request at INFO.
    for name in ("httpx", "telegram"):
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def configure_sqlalchemy_logging(show_sql: bool = False) -> None:
    """Keep SQLAlchemy logs styled, but hide SQL statements by default."""
    sqlalchemy_level = logging.INFO if show_sql else logging.WARNING
    for name in ("sqlalchemy", "sqlalchemy.engine", "sqlalchemy.pool"):
        sqlalchemy_logger = logging.getLogger(name)
        sqlalchemy_logger.handlers.clear()
        sqlalchemy_logger.addHandler(_rich_handler)
        sqlalchemy_logger.addHandler(_file_handler)
        sqlalchemy_logger.setLevel(sqlalchemy_level)
        sqlalchemy_logger.propagate = False


def configure_logging(level: str = "INFO", show_sql: bool = False) -> logging.Logger:
    """Configure root, app and framework loggers."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(_rich_handler)
    root_logger.addHandler(_file_handler)
    root_logger.setLevel(log_level)

    configure_framework_logging(log_level)
    configure_sqlalchemy_logging(show_sql=show_sql)

    app_logger = setup_logger(level=log_level)
    app_logger.setLevel(log_level)
    return app_logger


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------
logger = setup_logger()


# ---------------------------------------------------------------------------
# Convenience helpers with rich markup
# ---------------------------------------------------------------------------
def log_queue(action: str, detail: str = "") -> None:
    """Log delivery queue activity."""
    logger.info(f"[queue]{action}[/queue] {detail}".rstrip())


def log_db(operation: str, detail: str = "") -> None:
    """Log database operations."""
    logger.debug(f"[db]{operation}[/db] {detail}".rstrip())


def log_success(message: str) -> None:
    """Log success message."""
    logger.info(f"[success]✅ {message}[/success]")
