"""
Error Handling Module
---------------------
Typed error taxonomy shared by the store, security manager, execution
engine and orchestrator.

Rules:
- Store and security errors are terminal for their operation only
- Tool faults never abort a batch of tool calls
- Provider errors are terminal for the turn and never retried here
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from typing import Any, Dict, List, Optional
import logging
import traceback


class ErrorKind(Enum):
    """Kinds of failure a public operation can report."""
    NAME_COLLISION = auto()     # Name taken by a built-in or stored tool
    INVALID_SCHEMA = auto()     # Bad tool name or parameter schema
    NOT_FOUND = auto()          # No such dynamic tool
    UNKNOWN_TOOL = auto()       # Invocation of an unresolved name
    SECURITY_REJECTED = auto()  # Policy denied a definition or invocation
    EXECUTION_FAULT = auto()    # Tool raised while running
    TIMEOUT = auto()            # Tool exceeded its wall-clock budget
    PROVIDER_ERROR = auto()     # Model backend failed


class ToolsmithError(Exception):
    """Base exception carrying an ErrorKind."""

    kind: ErrorKind = ErrorKind.EXECUTION_FAULT

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.kind.name}: {self.message})"


class StoreError(ToolsmithError):
    """Errors raised by the tool definition store."""
    pass


class NameCollisionError(StoreError):
    kind = ErrorKind.NAME_COLLISION


class InvalidSchemaError(StoreError):
    kind = ErrorKind.INVALID_SCHEMA


class NotFoundError(StoreError):
    kind = ErrorKind.NOT_FOUND


class SecurityRejectedError(ToolsmithError):
    kind = ErrorKind.SECURITY_REJECTED


class ToolTimeoutError(ToolsmithError):
    kind = ErrorKind.TIMEOUT


class ProviderError(ToolsmithError):
    """
    Opaque failure from a model provider.

    status_code is the HTTP status when one was received.
    """

    kind = ErrorKind.PROVIDER_ERROR

    def __init__(self, message: str, provider: str = "", status_code: int = 0):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


@dataclass
class ErrorRecord:
    """
    Structured record of a handled error.

    Kept by ErrorHandler for statistics and post-mortems.
    """
    kind: ErrorKind
    message: str
    details: Optional[Dict[str, Any]] = None
    timestamp: datetime = field(default_factory=datetime.now)
    stack_trace: Optional[str] = None

    @classmethod
    def from_exception(
        cls,
        exception: Exception,
        kind: Optional[ErrorKind] = None,
        details: Optional[Dict] = None
    ) -> "ErrorRecord":
        """Create a record from an exception."""
        if kind is None:
            kind = getattr(exception, "kind", ErrorKind.EXECUTION_FAULT)
        return cls(
            kind=kind,
            message=str(exception),
            details=details,
            stack_trace=traceback.format_exc(),
        )

    def __repr__(self) -> str:
        return f"ErrorRecord({self.kind.name}: {self.message})"


class ErrorHandler:
    """
    Central error handler with logging and bounded history.
    """

    LOG_LEVELS: Dict[ErrorKind, int] = {
        ErrorKind.NAME_COLLISION: logging.INFO,
        ErrorKind.INVALID_SCHEMA: logging.INFO,
        ErrorKind.NOT_FOUND: logging.INFO,
        ErrorKind.UNKNOWN_TOOL: logging.WARNING,
        ErrorKind.SECURITY_REJECTED: logging.WARNING,
        ErrorKind.EXECUTION_FAULT: logging.WARNING,
        ErrorKind.TIMEOUT: logging.WARNING,
        ErrorKind.PROVIDER_ERROR: logging.ERROR,
    }

    USER_MESSAGES: Dict[ErrorKind, str] = {
        ErrorKind.PROVIDER_ERROR: "The language model backend failed",
        ErrorKind.TIMEOUT: "A tool took too long to respond",
        ErrorKind.SECURITY_REJECTED: "That action was blocked by the security policy",
    }

    def __init__(self, max_history: int = 100):
        self._logger = logging.getLogger("toolsmith.errors")
        self._error_history: List[ErrorRecord] = []
        self._max_history = max_history

    def handle(self, error: ErrorRecord) -> str:
        """Log and record an error, then return the user-facing message."""
        level = self.LOG_LEVELS.get(error.kind, logging.ERROR)
        self._logger.log(
            level,
            f"{error.kind.name}: {error.message}",
            extra={"error_kind": error.kind.name},
        )
        if error.stack_trace and level >= logging.ERROR:
            self._logger.debug(f"Stack trace:\n{error.stack_trace}")

        self._error_history.append(error)
        if len(self._error_history) > self._max_history:
            self._error_history.pop(0)

        return self.user_message(error)

    def user_message(self, error: ErrorRecord) -> str:
        """Generate a user-facing message for an error."""
        prefix = self.USER_MESSAGES.get(error.kind)
        if prefix is None:
            return error.message
        return f"{prefix}: {error.message}"

    @property
    def history(self) -> List[ErrorRecord]:
        return self._error_history.copy()

    def get_error_stats(self) -> Dict[str, int]:
        """Count handled errors by kind."""
        stats: Dict[str, int] = {}
        for error in self._error_history:
            key = error.kind.name
            stats[key] = stats.get(key, 0) + 1
        return stats

    def clear_history(self) -> None:
        self._error_history.clear()
