# Memory module - Conversation history and notes
# Append-only history, explicit clear, no auto-learning

from .conversation import ConversationHistory, ConversationTurn, TurnRole
from .notes import NoteStore

__all__ = [
    "ConversationHistory",
    "ConversationTurn",
    "TurnRole",
    "NoteStore",
]
