"""
Execution Engine
----------------
The only entry point for running a tool.

Pipeline: resolve -> vet_invocation -> execute with timeout -> normalize.

Rules:
- invoke() never raises; every outcome is an InvocationResult
- A denied invocation never starts
- Built-in handlers run natively, dynamic tools run in the sandbox
- Each invocation has a wall-clock bound; the caller is released at it

Exit Criterion: A faulty or runaway tool cannot crash or stall the session.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import concurrent.futures
import json
import logging
import time

from core.errors import ErrorKind, ToolsmithError
from infra.logging import get_turn_id

from .registry import DynamicTool, ToolDefinition, ToolRegistry
from .sandbox import ToolSandbox
from .security import SecurityManager


@dataclass
class InvocationRequest:
    """A tool name plus its raw, unvalidated arguments."""
    tool_name: str
    arguments: Any = field(default_factory=dict)
    call_id: Optional[str] = None


@dataclass
class InvocationResult:
    """Success(value) or Failure(kind, message)."""
    tool_name: str
    value: Any = None
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    execution_time_ms: float = 0.0
    call_id: Optional[str] = None
    turn_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def ok(cls, tool_name: str, value: Any, **kwargs) -> "InvocationResult":
        return cls(tool_name=tool_name, value=value, **kwargs)

    @classmethod
    def failure(cls, tool_name: str, kind: ErrorKind, message: str, **kwargs) -> "InvocationResult":
        return cls(tool_name=tool_name, error_kind=kind, message=message, **kwargs)

    @property
    def success(self) -> bool:
        return self.error_kind is None

    def render(self) -> str:
        """Value or error as text for the conversation."""
        if not self.success:
            return f"{self.error_kind.name}: {self.message}"
        if isinstance(self.value, str):
            return self.value
        try:
            return json.dumps(self.value, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            return str(self.value)

    def __repr__(self) -> str:
        status = "✓" if self.success else "✗"
        detail = self.value if self.success else f"{self.error_kind.name}: {self.message}"
        return f"InvocationResult({status} {self.tool_name}: {detail})"


class ExecutionEngine:
    """
    Resolves, gates and runs tool invocations.

    A fresh single-worker pool per call keeps a stuck tool from blocking
    the next one; the pool is shut down without waiting so the caller is
    released at the deadline even if the worker thread is still busy.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        security: SecurityManager,
        sandbox: Optional[ToolSandbox] = None,
        default_timeout: float = 5.0,
    ):
        self.registry = registry
        self.security = security
        self.sandbox = sandbox or ToolSandbox(url_guard=security.is_url_allowed)
        self.default_timeout = default_timeout
        self._logger = logging.getLogger("toolsmith.tools.executor")

    def invoke(self, request: InvocationRequest, turn_id: Optional[str] = None) -> InvocationResult:
        """Execute one tool call. Never raises."""
        turn_id = turn_id or get_turn_id()
        meta = {"call_id": request.call_id, "turn_id": turn_id}

        try:
            definition = self.registry.resolve(request.tool_name)
        except Exception as e:
            self._logger.error(f"Registry lookup failed for {request.tool_name}: {e}")
            return InvocationResult.failure(
                request.tool_name, ErrorKind.EXECUTION_FAULT, f"Registry lookup failed: {e}", **meta
            )

        if definition is None:
            self._logger.warning(f"Unknown tool requested: {request.tool_name}")
            return InvocationResult.failure(
                request.tool_name, ErrorKind.UNKNOWN_TOOL, f"Unknown tool: {request.tool_name}", **meta
            )

        verdict = self.security.vet_invocation(request.tool_name, request.arguments, definition)
        if not verdict.allowed:
            return InvocationResult.failure(
                request.tool_name, ErrorKind.SECURITY_REJECTED, verdict.reason, **meta
            )

        return self._execute_with_timeout(definition, request.arguments, meta)

    def _timeout_for(self, definition: ToolDefinition) -> float:
        return definition.timeout_seconds or self.default_timeout

    def _target(self, definition: ToolDefinition, args: Dict[str, Any], timeout: float):
        if isinstance(definition, DynamicTool):
            return lambda: self.sandbox.run(definition, args, timeout=timeout)
        return lambda: definition.handler(args)

    def _execute_with_timeout(
        self,
        definition: ToolDefinition,
        args: Dict[str, Any],
        meta: Dict[str, Any],
    ) -> InvocationResult:
        """Run the tool on a worker thread and normalize the outcome."""
        name = definition.name
        timeout = self._timeout_for(definition)
        start = time.perf_counter()

        pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"tool-{name}"
        )
        try:
            future = pool.submit(self._target(definition, args, timeout))
            value = future.result(timeout=timeout)

        except concurrent.futures.TimeoutError:
            self._logger.error(f"Timeout executing {name} after {timeout:g}s")
            return InvocationResult.failure(
                name, ErrorKind.TIMEOUT, f"Execution timed out after {timeout:g}s",
                execution_time_ms=self._elapsed_ms(start), **meta
            )

        except ToolsmithError as e:
            level = logging.ERROR if e.kind == ErrorKind.EXECUTION_FAULT else logging.WARNING
            self._logger.log(level, f"{name} failed ({e.kind.name}): {e.message}")
            return InvocationResult.failure(
                name, e.kind, e.message, execution_time_ms=self._elapsed_ms(start), **meta
            )

        except Exception as e:
            self._logger.error(f"Execution error in {name}: {type(e).__name__}: {e}")
            return InvocationResult.failure(
                name, ErrorKind.EXECUTION_FAULT, f"{type(e).__name__}: {e}",
                execution_time_ms=self._elapsed_ms(start), **meta
            )

        finally:
            pool.shutdown(wait=False)

        elapsed = self._elapsed_ms(start)
        self._logger.info(
            f"Executed {name} in {elapsed:.1f}ms",
            extra={"tool_name": name, "execution_time_ms": elapsed, "success": True},
        )
        return InvocationResult.ok(name, value, execution_time_ms=elapsed, **meta)

    @staticmethod
    def _elapsed_ms(start: float) -> float:
        return (time.perf_counter() - start) * 1000
