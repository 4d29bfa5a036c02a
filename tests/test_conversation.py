"""
Conversation History Tests
--------------------------
Append-only log, context window trimming, rendering and persistence.
"""

import pytest

from infra.database import DatabaseManager
from memory.conversation import ConversationHistory, TurnRole
from memory.notes import NoteStore


class TestAppend:

    def test_turns_in_append_order(self):
        history = ConversationHistory()
        history.add_system_turn("be helpful")
        history.add_user_turn("hi")
        history.add_assistant_turn("", tool_calls=[{"call_id": "c1", "name": "calculate", "arguments": {}}])
        history.add_tool_turn("calculate", "Result: 2", tool_call_id="c1")
        history.add_assistant_turn("It is 2")

        roles = [t.role for t in history.turns]
        assert roles == [
            TurnRole.SYSTEM, TurnRole.USER, TurnRole.ASSISTANT, TurnRole.TOOL, TurnRole.ASSISTANT,
        ]
        assert len(history) == 5
        assert history.get_tool_turns()[0].tool_call_id == "c1"

    def test_turns_property_is_a_copy(self):
        history = ConversationHistory()
        history.add_user_turn("hi")
        history.turns.clear()
        assert len(history) == 1

    def test_clear(self):
        history = ConversationHistory()
        history.add_user_turn("hi")
        assert history.clear() == 1
        assert history.is_empty()


class TestContextWindow:

    def test_small_history_untouched(self):
        history = ConversationHistory(max_context_messages=10)
        history.add_user_turn("a")
        history.add_assistant_turn("b")
        assert history.context_window() == history.turns

    def test_message_cap_keeps_system_and_newest(self):
        history = ConversationHistory(max_context_messages=4)
        history.add_system_turn("rules")
        for i in range(6):
            history.add_user_turn(f"u{i}")

        window = history.context_window()
        assert [t.content for t in window] == ["rules", "u3", "u4", "u5"]
        assert len(history) == 7

    def test_char_budget(self):
        history = ConversationHistory(
            max_context_messages=100, max_context_chars=40, trimmed_context_chars=25
        )
        for i in range(5):
            history.add_user_turn(f"{i}" * 10)

        window = history.context_window()
        assert [t.content for t in window] == ["3" * 10, "4" * 10]

    def test_newest_turn_always_kept(self):
        history = ConversationHistory(max_context_chars=10, trimmed_context_chars=5)
        history.add_user_turn("x" * 100)
        assert len(history.context_window()) == 1

    def test_orphan_tool_turns_dropped(self):
        history = ConversationHistory(max_context_messages=3)
        history.add_user_turn("question")
        history.add_assistant_turn("", tool_calls=[{"call_id": "c1", "name": "t", "arguments": {}}])
        history.add_tool_turn("t", "result one", tool_call_id="c1")
        history.add_tool_turn("t", "result two", tool_call_id="c1")
        history.add_assistant_turn("done")

        window = history.context_window()
        assert window[0].role != TurnRole.TOOL
        assert [t.content for t in window] == ["done"]


class TestRendering:

    def _history(self):
        history = ConversationHistory()
        history.add_user_turn("what is 2+2")
        history.add_tool_turn("calculate", "Result: 4")
        history.add_assistant_turn("4")
        return history

    def test_empty(self):
        assert ConversationHistory().render("text") == "No conversation history found."
        assert ConversationHistory().summarize() == "No conversation history."

    def test_text(self):
        rendered = self._history().render("text")
        assert rendered.startswith("CONVERSATION HISTORY\n====================")
        assert "[USER]: what is 2+2" in rendered
        assert "[TOOL calculate]: Result: 4" in rendered

    def test_markdown(self):
        rendered = self._history().render("markdown")
        assert rendered.startswith("# Conversation History")
        assert "**User:** what is 2+2" in rendered
        assert "**Tool `calculate`:** Result: 4" in rendered
        assert "**Assistant:** 4" in rendered

    def test_summary(self):
        rendered = self._history().render("summary")
        assert rendered.startswith("**Conversation Summary**")
        assert "- 1 user messages" in rendered
        assert "Tools used: calculate" in rendered


class TestPersistence:

    def test_history_reloads(self, tmp_path):
        path = str(tmp_path / "conv.db")

        db = DatabaseManager(path)
        db.initialize()
        history = ConversationHistory(db=db, session_id="s1")
        history.add_user_turn("hi", turn_id="turn_1")
        history.add_assistant_turn("", tool_calls=[{"call_id": "c1", "name": "calculate",
                                                    "arguments": {"expression": "1+1"}}])
        history.add_tool_turn("calculate", "Result: 2", tool_call_id="c1")
        db.close()

        db = DatabaseManager(path)
        db.initialize()
        restored = ConversationHistory(db=db, session_id="s1")
        other = ConversationHistory(db=db, session_id="s2")

        assert [t.role for t in restored.turns] == [TurnRole.USER, TurnRole.ASSISTANT, TurnRole.TOOL]
        assert restored.turns[0].turn_id == "turn_1"
        assert restored.turns[1].tool_calls[0]["arguments"] == {"expression": "1+1"}
        assert restored.turns[2].tool_call_id == "c1"
        assert len(other) == 0

        restored.clear()
        assert ConversationHistory(db=db, session_id="s1").is_empty()
        db.close()


class TestNotes:

    def test_save_and_render(self, temp_db):
        notes = NoteStore(temp_db)
        notes.save("  Ideas ", "write tests")
        assert notes.find("Ideas").content == "write tests"
        assert notes.render().startswith("Title: Ideas\nContent: write tests\nCreated: ")

    def test_empty_title_rejected(self, temp_db):
        with pytest.raises(ValueError):
            NoteStore(temp_db).save("   ", "x")
