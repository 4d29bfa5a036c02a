"""
Orchestrator
------------
Drives one conversation: user text in, model and tool steps, answer out.

Loop per turn:
    AWAITING_MODEL -> PARSING_RESPONSE -> FINISHED
                                       -> DISPATCHING_TOOLS -> AWAITING_MODEL ...

Rules:
- Tool calls run sequentially in model order; each result is appended
  before the next call starts
- A failed tool call never aborts the batch
- Provider errors end the turn; they are never retried here
- Cancellation is honoured between iterations only

Exit Criterion: The model can create a tool and use it in the same turn.
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional
import asyncio
import logging
import time

from api.providers import Provider, ToolCalls
from infra.config import DEFAULT_SYSTEM_PROMPT
from infra.logging import TurnContext, log_turn_end
from memory.conversation import ConversationHistory, TurnRole
from tools.executor import ExecutionEngine, InvocationRequest, InvocationResult
from tools.registry import ToolRegistry

from .errors import ErrorHandler, ErrorKind, ErrorRecord, ProviderError
from .state_machine import StateMachine, TurnState

if TYPE_CHECKING:
    from infra.config import ToolsmithConfig, SecretManager
    from infra.database import DatabaseManager


TRUNCATION_NOTICE = (
    "I stopped after {max_steps} reasoning steps without reaching a final answer. "
    "Ask me to continue if you want me to keep going."
)
CANCELLED_NOTICE = "Request cancelled."
PART_SEPARATOR = "\n\n---\n\n"


@dataclass
class OrchestratorConfig:
    """Configuration for the orchestrator."""
    max_steps: int = 10
    system_prompt: Optional[str] = DEFAULT_SYSTEM_PROMPT
    result_part_chars: int = 800

    @classmethod
    def from_settings(cls, settings: Any) -> "OrchestratorConfig":
        return cls(
            max_steps=settings.max_steps,
            system_prompt=settings.system_prompt,
            result_part_chars=settings.result_part_chars,
        )


@dataclass
class TurnResult:
    """Outcome of one run_turn call."""
    success: bool
    answer: str
    turn_id: str
    steps: int = 0
    tool_results: List[InvocationResult] = field(default_factory=list)
    truncated: bool = False
    cancelled: bool = False
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    execution_time_ms: float = 0.0

    @property
    def tools_executed(self) -> int:
        return len(self.tool_results)

    def __repr__(self) -> str:
        status = "✓" if self.success else "✗"
        return f"TurnResult({status} {self.turn_id}, steps={self.steps}, tools={self.tools_executed})"


def frame_tool_result(result: InvocationResult, part_chars: int = 800) -> str:
    """Text of a tool turn; long results are split into [Part i/n] chunks."""
    name = result.tool_name
    if not result.success:
        return f"Tool '{name}' failed ({result.error_kind.name}): {result.message}"

    text = result.render()
    if len(text) <= part_chars:
        return f"Tool '{name}' returned:\n{text}"

    parts = [text[i:i + part_chars] for i in range(0, len(text), part_chars)]
    total = len(parts)
    chunks = [f"[Part {i}/{total}]\n{part}" for i, part in enumerate(parts, start=1)]
    return f"Tool '{name}' (split into {total} parts):\n" + PART_SEPARATOR.join(chunks)


class Orchestrator:
    """
    Turn loop for a single session.

    Responsibilities:
    - State management
    - Provider submission with the trimmed context window
    - Routing tool calls through the execution engine
    - Error routing and turn logging
    """

    def __init__(
        self,
        provider: Provider,
        registry: ToolRegistry,
        engine: ExecutionEngine,
        history: Optional[ConversationHistory] = None,
        config: Optional[OrchestratorConfig] = None,
        error_handler: Optional[ErrorHandler] = None,
        db: Optional["DatabaseManager"] = None,
    ):
        self.config = config or OrchestratorConfig()
        self._provider = provider
        self._registry = registry
        self._engine = engine
        self._history = history if history is not None else ConversationHistory()
        self._error_handler = error_handler or ErrorHandler()
        self._db = db
        self._state_machine = StateMachine()
        self._cancel_requested = False
        self._turns_completed = 0
        self._logger = logging.getLogger("toolsmith.core.orchestrator")

    @property
    def state(self) -> TurnState:
        return self._state_machine.state

    @property
    def history(self) -> ConversationHistory:
        return self._history

    @property
    def provider(self) -> Provider:
        return self._provider

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def error_handler(self) -> ErrorHandler:
        return self._error_handler

    def set_provider(self, provider: Provider) -> None:
        """Swap the model backend between turns."""
        if self._state_machine.is_busy():
            raise RuntimeError("Cannot switch provider while a turn is running")
        self._provider = provider
        self._logger.info(f"Provider set to {provider.name} ({provider.model})")

    def cancel(self) -> None:
        """Ask the running turn to stop at the next iteration boundary."""
        if self._state_machine.is_busy():
            self._cancel_requested = True
            self._logger.info("Cancellation requested")

    def clear_history(self) -> int:
        if self._state_machine.is_busy():
            raise RuntimeError("Cannot clear history while a turn is running")
        return self._history.clear()

    def _ensure_system_prompt(self, turn_id: str) -> None:
        if not self.config.system_prompt:
            return
        if any(t.role == TurnRole.SYSTEM for t in self._history.turns):
            return
        self._history.add_system_turn(self.config.system_prompt, turn_id=turn_id)

    async def run_turn(self, user_text: str) -> TurnResult:
        """
        Process one user message to completion.

        Never raises for provider or tool failures; those are reported in
        the TurnResult.
        """
        if self._state_machine.is_busy():
            raise RuntimeError("A turn is already running for this session")

        self._cancel_requested = False
        start = time.perf_counter()

        with TurnContext() as turn_id:
            try:
                result = await self._run_loop(user_text, turn_id)
            finally:
                if self._state_machine.state == TurnState.FINISHED:
                    self._state_machine.transition(TurnState.IDLE, "Turn complete")
                else:
                    self._state_machine.reset("Turn aborted")

            result.execution_time_ms = (time.perf_counter() - start) * 1000
            self._turns_completed += 1
            log_turn_end(
                turn_id,
                success=result.success,
                tools_executed=result.tools_executed,
                steps=result.steps,
                error=result.error,
            )
            return result

    async def _run_loop(self, user_text: str, turn_id: str) -> TurnResult:
        self._ensure_system_prompt(turn_id)
        self._history.add_user_turn(user_text, turn_id=turn_id)
        self._state_machine.transition(TurnState.AWAITING_MODEL, "User message received")

        steps = 0
        tool_results: List[InvocationResult] = []

        while True:
            if self._cancel_requested:
                self._history.add_assistant_turn(CANCELLED_NOTICE, turn_id=turn_id)
                self._state_machine.transition(TurnState.FINISHED, "Cancelled")
                return TurnResult(
                    success=False, answer=CANCELLED_NOTICE, turn_id=turn_id,
                    steps=steps, tool_results=tool_results, cancelled=True,
                )

            if steps >= self.config.max_steps:
                notice = TRUNCATION_NOTICE.format(max_steps=self.config.max_steps)
                self._history.add_assistant_turn(notice, turn_id=turn_id)
                self._state_machine.transition(TurnState.FINISHED, "Step limit reached")
                self._logger.warning(f"Turn truncated after {steps} steps")
                return TurnResult(
                    success=True, answer=notice, turn_id=turn_id,
                    steps=steps, tool_results=tool_results, truncated=True,
                )

            steps += 1
            try:
                response = await self._provider.submit(
                    self._history.context_window(),
                    self._registry.list_all(),
                )
            except ProviderError as e:
                message = self._error_handler.handle(ErrorRecord.from_exception(e))
                self._state_machine.transition(TurnState.FINISHED, "Provider error")
                return TurnResult(
                    success=False, answer=message, turn_id=turn_id,
                    steps=steps, tool_results=tool_results,
                    error_kind=ErrorKind.PROVIDER_ERROR, error=e.message,
                )

            self._state_machine.transition(TurnState.PARSING_RESPONSE, f"Step {steps} response")

            if isinstance(response, ToolCalls) and response.calls:
                self._history.add_assistant_turn(
                    response.text,
                    tool_calls=[call.to_dict() for call in response.calls],
                    turn_id=turn_id,
                )
                self._state_machine.transition(
                    TurnState.DISPATCHING_TOOLS, f"{len(response.calls)} tool call(s)"
                )
                for call in response.calls:
                    tool_results.append(await self._dispatch(call, turn_id))
                self._state_machine.transition(TurnState.AWAITING_MODEL, "Tool results appended")
                continue

            answer = response.text
            self._history.add_assistant_turn(answer, turn_id=turn_id)
            self._state_machine.transition(TurnState.FINISHED, "Final answer")
            return TurnResult(
                success=True, answer=answer, turn_id=turn_id,
                steps=steps, tool_results=tool_results,
            )

    async def _dispatch(self, call: Any, turn_id: str) -> InvocationResult:
        """Run one tool call off the event loop and append its result."""
        self._logger.info(f"Executing tool: {call.name}")
        request = InvocationRequest(tool_name=call.name, arguments=call.arguments, call_id=call.call_id)
        result = await asyncio.to_thread(self._engine.invoke, request, turn_id)

        if not result.success:
            self._error_handler.handle(ErrorRecord(kind=result.error_kind, message=result.message))

        self._history.add_tool_turn(
            call.name,
            frame_tool_result(result, self.config.result_part_chars),
            tool_call_id=call.call_id,
            turn_id=turn_id,
        )
        return result

    def get_status(self) -> Dict[str, Any]:
        """Snapshot for the CLI /status command."""
        builtin = len(self._registry.builtin_names())
        return {
            "state": self.state.name,
            "provider": self._provider.name,
            "model": self._provider.model,
            "builtin_tools": builtin,
            "dynamic_tools": len(self._registry) - builtin,
            "history_turns": len(self._history),
            "turns_completed": self._turns_completed,
            "max_steps": self.config.max_steps,
            "errors": self._error_handler.get_error_stats(),
        }

    def shutdown(self) -> None:
        """Close owned resources."""
        if self._db is not None:
            self._db.close()
        self._logger.info("Orchestrator shut down")


def build_orchestrator(
    config: "ToolsmithConfig",
    secrets: Optional["SecretManager"] = None,
    provider: Optional[Provider] = None,
) -> Orchestrator:
    """
    Wire every component from a validated configuration.

    The provider is built from config unless one is passed in.
    """
    from api.providers import create_provider
    from infra.config import SecretManager
    from infra.database import DatabaseManager
    from memory.notes import NoteStore
    from tools.builtin import register_builtin_tools
    from tools.sandbox import ToolSandbox
    from tools.security import SecurityManager, policy_from_settings
    from tools.store import ToolDefinitionStore

    db = DatabaseManager(config.storage.db_path)
    db.initialize()

    store = ToolDefinitionStore(db)
    registry = ToolRegistry(store)
    security = SecurityManager(policy_from_settings(config.security))
    sandbox = ToolSandbox(
        url_guard=security.is_url_allowed,
        network_timeout=config.execution.network_timeout_seconds,
    )
    engine = ExecutionEngine(
        registry, security, sandbox,
        default_timeout=config.execution.default_timeout_seconds,
    )

    settings = config.orchestrator
    history = ConversationHistory(
        db=db,
        session_id=config.storage.session_id,
        max_context_messages=settings.max_context_messages,
        max_context_chars=settings.max_context_chars,
        trimmed_context_chars=settings.trimmed_context_chars,
    )

    register_builtin_tools(
        registry, security, sandbox,
        notes=NoteStore(db),
        history=history,
        network_timeout=config.execution.network_timeout_seconds,
    )

    if provider is None:
        provider = create_provider(config.provider, secrets or SecretManager())

    return Orchestrator(
        provider=provider,
        registry=registry,
        engine=engine,
        history=history,
        config=OrchestratorConfig.from_settings(settings),
        db=db,
    )
