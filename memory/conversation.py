"""
Conversation History
--------------------
Append-only turn log for one session, optionally persisted to SQLite.

Rules:
- Turns are only appended; the only mutation is an explicit clear()
- A persisted turn is written before it becomes visible in memory
- The provider sees a trimmed context window; the log itself is never trimmed
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import json
import logging

from infra.database import DatabaseManager, TurnRecord


class TurnRole(str, Enum):
    """Role in a conversation turn."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass
class ConversationTurn:
    """A single turn in the conversation."""
    role: TurnRole
    content: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    turn_id: str = ""

    # Assistant turns: the calls the model requested
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)

    # Tool turns: which call this result answers
    tool_name: Optional[str] = None
    tool_call_id: Optional[str] = None

    @property
    def char_count(self) -> int:
        size = len(self.content)
        if self.tool_calls:
            size += len(json.dumps(self.tool_calls, default=str))
        return size

    def to_meta(self) -> Dict[str, Any]:
        meta: Dict[str, Any] = {}
        if self.tool_calls:
            meta["tool_calls"] = self.tool_calls
        if self.tool_name:
            meta["tool_name"] = self.tool_name
        if self.tool_call_id:
            meta["tool_call_id"] = self.tool_call_id
        return meta

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization."""
        return {
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "turn_id": self.turn_id,
            **self.to_meta(),
        }

    @classmethod
    def from_record(cls, record: TurnRecord) -> "ConversationTurn":
        meta = record.meta or {}
        return cls(
            role=TurnRole(record.role),
            content=record.content,
            timestamp=record.timestamp,
            turn_id=record.turn_id,
            tool_calls=list(meta.get("tool_calls", [])),
            tool_name=meta.get("tool_name"),
            tool_call_id=meta.get("tool_call_id"),
        )

    def __repr__(self) -> str:
        preview = self.content[:50] + "..." if len(self.content) > 50 else self.content
        return f"Turn({self.role.name}: {preview})"


class ConversationHistory:
    """
    Turn log for one session.

    With a DatabaseManager the log is loaded on construction and every
    append is written through; without one it lives in memory only.
    """

    def __init__(
        self,
        db: Optional[DatabaseManager] = None,
        session_id: str = "default",
        max_context_messages: int = 20,
        max_context_chars: int = 100_000,
        trimmed_context_chars: int = 80_000,
    ):
        self._db = db
        self.session_id = session_id
        self.max_context_messages = max_context_messages
        self.max_context_chars = max_context_chars
        self.trimmed_context_chars = trimmed_context_chars
        self._turns: List[ConversationTurn] = []
        self._logger = logging.getLogger("toolsmith.memory.conversation")

        if db is not None:
            self._turns = [ConversationTurn.from_record(r) for r in db.get_turns(session_id)]
            if self._turns:
                self._logger.info(f"Restored {len(self._turns)} turns for session {session_id}")

    # ----- appends -----

    def add_system_turn(self, content: str, turn_id: str = "") -> ConversationTurn:
        return self._append(ConversationTurn(role=TurnRole.SYSTEM, content=content, turn_id=turn_id))

    def add_user_turn(self, content: str, turn_id: str = "") -> ConversationTurn:
        return self._append(ConversationTurn(role=TurnRole.USER, content=content, turn_id=turn_id))

    def add_assistant_turn(
        self,
        content: str,
        tool_calls: Optional[List[Dict[str, Any]]] = None,
        turn_id: str = "",
    ) -> ConversationTurn:
        return self._append(ConversationTurn(
            role=TurnRole.ASSISTANT,
            content=content,
            tool_calls=list(tool_calls or []),
            turn_id=turn_id,
        ))

    def add_tool_turn(
        self,
        tool_name: str,
        content: str,
        tool_call_id: Optional[str] = None,
        turn_id: str = "",
    ) -> ConversationTurn:
        return self._append(ConversationTurn(
            role=TurnRole.TOOL,
            content=content,
            tool_name=tool_name,
            tool_call_id=tool_call_id,
            turn_id=turn_id,
        ))

    def _append(self, turn: ConversationTurn) -> ConversationTurn:
        if self._db is not None:
            self._db.save_turn(TurnRecord(
                session_id=self.session_id,
                turn_id=turn.turn_id,
                role=turn.role.value,
                content=turn.content,
                timestamp=turn.timestamp,
                meta=turn.to_meta(),
            ))
        self._turns.append(turn)
        self._logger.debug(f"Added turn: {turn.role.name}, total: {len(self._turns)}")
        return turn

    # ----- reads -----

    @property
    def turns(self) -> List[ConversationTurn]:
        """All turns (read-only copy)."""
        return self._turns.copy()

    def get_user_turns(self) -> List[ConversationTurn]:
        return [t for t in self._turns if t.role == TurnRole.USER]

    def get_tool_turns(self) -> List[ConversationTurn]:
        return [t for t in self._turns if t.role == TurnRole.TOOL]

    @property
    def total_chars(self) -> int:
        return sum(t.char_count for t in self._turns)

    def context_window(self) -> List[ConversationTurn]:
        """
        Turns to submit to the provider.

        Over max_context_messages or max_context_chars, system turns are
        kept and the newest other turns are taken while they fit both the
        message cap and trimmed_context_chars. Tool turns left without
        their requesting assistant turn are dropped from the front.
        """
        turns = self._turns
        if len(turns) <= self.max_context_messages and self.total_chars <= self.max_context_chars:
            return turns.copy()

        system = [t for t in turns if t.role == TurnRole.SYSTEM]
        budget_messages = max(1, self.max_context_messages - len(system))

        recent: List[ConversationTurn] = []
        size = 0
        for turn in reversed(turns):
            if turn.role == TurnRole.SYSTEM:
                continue
            if recent and (
                len(recent) >= budget_messages
                or size + turn.char_count > self.trimmed_context_chars
            ):
                break
            recent.append(turn)
            size += turn.char_count
        recent.reverse()

        while recent and recent[0].role == TurnRole.TOOL:
            recent.pop(0)

        window = system + recent
        self._logger.info(
            f"Context trimmed: {len(window)} of {len(turns)} turns, "
            f"{sum(t.char_count for t in window)} chars"
        )
        return window

    # ----- rendering -----

    def summarize(self) -> str:
        """One-line recap of requests and tools used."""
        if not self._turns:
            return "No conversation history."

        parts = []
        user_turns = self.get_user_turns()
        if user_turns:
            recent_requests = [t.content for t in user_turns[-3:]]
            parts.append(f"Recent requests: {'; '.join(recent_requests)}")

        tools_used = sorted({t.tool_name for t in self.get_tool_turns() if t.tool_name})
        if tools_used:
            parts.append(f"Tools used: {', '.join(tools_used)}")

        return " | ".join(parts)

    def render(self, format: str = "markdown") -> str:
        """History as `text`, `markdown` or `summary`."""
        turns = self._turns
        if not turns:
            return "No conversation history found."

        if format == "summary":
            user_count = sum(1 for t in turns if t.role == TurnRole.USER)
            assistant_count = sum(1 for t in turns if t.role == TurnRole.ASSISTANT)
            lines = [
                "**Conversation Summary**",
                "",
                f"- {user_count} user messages",
                f"- {assistant_count} assistant responses",
                f"- {len(self.get_tool_turns())} tool results",
            ]
            first_user = next((t for t in turns if t.role == TurnRole.USER), None)
            if first_user is not None:
                lines.append("")
                lines.append(f"**Started with:** {first_user.content[:100]}...")
            recap = self.summarize()
            if recap:
                lines.append(f"**Recap:** {recap}")
            return "\n".join(lines)

        if format == "text":
            lines = ["CONVERSATION HISTORY", "====================", ""]
            for turn in turns:
                label = turn.role.value.upper()
                if turn.tool_name:
                    label = f"{label} {turn.tool_name}"
                lines.append(f"[{label}]: {turn.content}")
                lines.append("")
            return "\n".join(lines).rstrip() + "\n"

        lines = ["# Conversation History", ""]
        for turn in turns:
            if turn.role == TurnRole.SYSTEM:
                lines.append(f"**System:** {turn.content[:200]}")
            elif turn.role == TurnRole.USER:
                lines.append(f"**User:** {turn.content}")
            elif turn.role == TurnRole.ASSISTANT:
                lines.append(f"**Assistant:** {turn.content}")
            else:
                lines.append(f"**Tool `{turn.tool_name}`:** {turn.content}")
            lines.extend(["", "---", ""])
        return "\n".join(lines)

    # ----- lifecycle -----

    def clear(self) -> int:
        """Clear the session's history. Returns number of turns cleared."""
        count = len(self._turns)
        if self._db is not None:
            self._db.clear_turns(self.session_id)
        self._turns = []
        self._logger.info(f"Cleared {count} turns from session {self.session_id}")
        return count

    def __len__(self) -> int:
        return len(self._turns)

    def is_empty(self) -> bool:
        return not self._turns
