"""
Note Store
----------
User notes behind the save_note / read_notes built-ins.

Notes are plain title/content pairs in the `notes` table. They are
never fed back into the model context automatically.
"""

from typing import List, Optional

from infra.database import DatabaseManager, NoteRecord
from infra.logging import get_logger


NOTE_SEPARATOR = "\n\n---\n\n"
MAX_TITLE_CHARS = 200


class NoteStore:
    """SQLite-backed notes."""

    def __init__(self, db: DatabaseManager):
        self._db = db
        self._logger = get_logger("memory.notes")

    def save(self, title: str, content: str) -> NoteRecord:
        title = title.strip()
        if not title:
            raise ValueError("Note title must not be empty")
        if len(title) > MAX_TITLE_CHARS:
            raise ValueError(f"Note title longer than {MAX_TITLE_CHARS} characters")

        note = NoteRecord(title=title, content=content)
        self._db.save_note(note)
        self._logger.info(f"Saved note: {title}")
        return note

    def list(self) -> List[NoteRecord]:
        return self._db.list_notes()

    def find(self, title: str) -> Optional[NoteRecord]:
        """Most recent note with this exact title."""
        matches = [n for n in self.list() if n.title == title]
        return matches[-1] if matches else None

    def render(self) -> str:
        notes = self.list()
        if not notes:
            return "No notes found"
        return NOTE_SEPARATOR.join(
            f"Title: {n.title}\nContent: {n.content}\nCreated: {n.created_at.isoformat()}"
            for n in notes
        )
