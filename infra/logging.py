"""
Toolsmith Centralized Logging
-----------------------------
Structured logging with turn_id propagation so a single user turn can be
followed from the provider call through every tool invocation.

Design:
- Every user turn gets a unique turn_id
- turn_id propagates through: Orchestrator -> Engine -> Sandbox -> Store
- Console output via Rich, file output as JSON lines
- Severity discipline: INFO=state, WARNING=recoverable, ERROR=abort

Usage:
    from infra.logging import get_logger, TurnContext, log_turn_end

    logger = get_logger("core")

    with TurnContext() as turn_id:
        logger.info("Submitting conversation")
        log_turn_end(turn_id, success=True, tools_executed=2)
"""

import contextvars
import json
import logging
import uuid
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER = "toolsmith"

_turn_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "turn_id", default=None
)

# Record attributes copied into the JSON file log when present
_EXTRA_FIELDS = (
    "tool_name",
    "tool_args",
    "execution_time_ms",
    "success",
    "tools_executed",
    "steps",
    "error_kind",
    "reason",
)


def generate_turn_id() -> str:
    """Generate a unique turn ID."""
    return f"turn_{uuid.uuid4().hex[:12]}"


def get_turn_id() -> Optional[str]:
    """Get the current turn ID from context."""
    return _turn_id_var.get()


def set_turn_id(turn_id: str) -> contextvars.Token:
    """Set the current turn ID in context."""
    return _turn_id_var.set(turn_id)


def reset_turn_id(token: contextvars.Token) -> None:
    """Reset the turn ID to its previous value."""
    _turn_id_var.reset(token)


class TurnContext:
    """
    Context manager for turn scoping.

    Usage:
        with TurnContext() as turn_id:
            logger.info("Processing...")  # record carries turn_id
    """

    def __init__(self, turn_id: Optional[str] = None):
        self._turn_id = turn_id or generate_turn_id()
        self._token: Optional[contextvars.Token] = None

    def __enter__(self) -> str:
        self._token = set_turn_id(self._turn_id)
        return self._turn_id

    def __exit__(self, *args) -> None:
        if self._token is not None:
            reset_turn_id(self._token)
            self._token = None


class TurnIdFilter(logging.Filter):
    """Logging filter that adds turn_id to every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "turn_id", None) is None:
            record.turn_id = get_turn_id() or "-"
        return True


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured file logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "turn_id": getattr(record, "turn_id", "-"),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key in _EXTRA_FIELDS:
            if hasattr(record, key):
                log_entry[key] = getattr(record, key)

        return json.dumps(log_entry, default=str)


class TurnAwareRichHandler(RichHandler):
    """RichHandler that prefixes each message with the active turn_id."""

    def render_message(self, record: logging.LogRecord, message: str):
        turn_id = getattr(record, "turn_id", "-")
        if turn_id and turn_id != "-":
            message = f"[{turn_id}] {message}"
        return super().render_message(record, message)


_logging_initialized = False
_log_file_path: Optional[Path] = None


def configure_logging(
    level: int = logging.INFO,
    log_dir: Optional[str] = None,
    console: bool = True,
    file: bool = True,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 3,
) -> Optional[Path]:
    """
    Configure the toolsmith logging tree.

    Idempotent: the first call wins until reset_logging() is called.

    Args:
        level: Console logging level
        log_dir: Directory for the JSON log file (default: ./logs)
        console: Enable Rich console output
        file: Enable JSON file output

    Returns:
        Path of the JSON log file, if file logging is enabled
    """
    global _logging_initialized, _log_file_path

    if _logging_initialized:
        return _log_file_path

    root_logger = logging.getLogger(ROOT_LOGGER)
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()
    root_logger.propagate = False

    turn_filter = TurnIdFilter()

    if console:
        console_handler = TurnAwareRichHandler(
            console=Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
        )
        console_handler.setLevel(level)
        console_handler.addFilter(turn_filter)
        root_logger.addHandler(console_handler)

    if file:
        log_path = Path(log_dir) if log_dir else Path("logs")
        log_path.mkdir(parents=True, exist_ok=True)
        _log_file_path = log_path / "toolsmith.log"

        file_handler = RotatingFileHandler(
            str(_log_file_path),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)  # File gets everything
        file_handler.setFormatter(JSONFormatter())
        file_handler.addFilter(turn_filter)
        root_logger.addHandler(file_handler)

    _logging_initialized = True
    return _log_file_path


def reset_logging() -> None:
    """Remove all handlers so configure_logging() can run again."""
    global _logging_initialized, _log_file_path

    root_logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()
    root_logger.propagate = True

    _logging_initialized = False
    _log_file_path = None


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger inside the toolsmith namespace.

    Args:
        name: Logger name (prefixed with 'toolsmith.' if not already)
    """
    if not name.startswith(ROOT_LOGGER):
        name = f"{ROOT_LOGGER}.{name}"

    return logging.getLogger(name)


def log_turn_end(
    turn_id: str,
    success: bool,
    tools_executed: int = 0,
    steps: int = 0,
    error: Optional[str] = None,
) -> None:
    """
    Log the end of a user turn with summary information.

    This is the TURN_END boundary event for post-mortems.
    """
    logger = get_logger("core.turn")

    extra = {
        "turn_id": turn_id,
        "success": success,
        "tools_executed": tools_executed,
        "steps": steps,
    }

    if success:
        logger.info(
            f"TURN_END: success=True, steps={steps}, tools_executed={tools_executed}",
            extra=extra,
        )
    else:
        extra["reason"] = error or "Unknown error"
        logger.error(
            f"TURN_END: success=False, error={error or 'Unknown'}",
            extra=extra,
        )
