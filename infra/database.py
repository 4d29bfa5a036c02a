"""
Toolsmith Database Manager
--------------------------
SQLite persistence for dynamic tool definitions, conversation history
and notes, with schema versioning and retention on startup.

Design:
- Schema version table for migrations
- Hard fail on downgrade (db.version > code.version)
- Auto-migrate forward (db.version < code.version)
- Startup-only pruning of old conversation turns
- Explicit transaction boundaries; every write commits before returning
- One connection shared across threads, serialized by a re-entrant lock

Usage:
    from infra.database import DatabaseManager

    db = DatabaseManager("toolsmith.db")
    db.initialize()

    with db.transaction():
        db.insert_tool(record)

    tools = db.list_tools()
"""

import json
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional

from infra.logging import get_logger

# Current schema version - increment on any schema change
SCHEMA_VERSION = 1

# Retention limits
MAX_TURNS_PER_SESSION = 1000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ToolRecord:
    """Durable form of a dynamic tool."""
    name: str
    description: str
    parameters: List[Dict[str, Any]]
    code: str
    capabilities: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    seq: int = 0


@dataclass
class TurnRecord:
    """A single persisted conversation turn."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    session_id: str = "default"
    turn_id: str = ""  # Logging turn_id for traceability
    role: str = ""  # system | user | assistant | tool
    content: str = ""
    timestamp: datetime = field(default_factory=_utcnow)
    meta: Dict[str, Any] = field(default_factory=dict)
    seq: int = 0


@dataclass
class NoteRecord:
    """A saved note."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    title: str = ""
    content: str = ""
    created_at: datetime = field(default_factory=_utcnow)


class DatabaseError(Exception):
    """Database-specific errors."""
    pass


class SchemaMismatchError(DatabaseError):
    """Schema version mismatch (downgrade attempted)."""
    pass


class MigrationFailedError(DatabaseError):
    """Migration failed mid-way."""
    pass


class DatabaseManager:
    """
    SQLite database manager with schema versioning.

    All reads and writes are serialized; writes outside an explicit
    transaction() block commit immediately.
    """

    def __init__(self, db_path: str = "toolsmith.db"):
        self._db_path = Path(db_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._logger = get_logger("infra.database")
        self._lock = threading.RLock()
        self._initialized = False
        self._in_transaction = False

    @property
    def db_path(self) -> Path:
        """Return the database file path."""
        return self._db_path

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        """
        Initialize the database.

        - Creates database if not exists
        - Checks schema version
        - Runs migrations if needed (forward only)
        - Hard fails on downgrade
        - Runs startup pruning
        """
        self._logger.info(f"Initializing database at {self._db_path}")

        if str(self._db_path) != ":memory:":
            self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row

        db_version = self._get_schema_version()

        if db_version is None:
            self._logger.info("Creating new database schema")
            self._create_schema()
            self._set_schema_version(SCHEMA_VERSION)
        elif db_version < SCHEMA_VERSION:
            self._logger.info(f"Migrating database from v{db_version} to v{SCHEMA_VERSION}")
            self._migrate(db_version, SCHEMA_VERSION)
        elif db_version > SCHEMA_VERSION:
            self._conn.close()
            self._conn = None
            raise SchemaMismatchError(
                f"Database schema version ({db_version}) is newer than code version ({SCHEMA_VERSION}). "
                f"Downgrade is not supported. Please update the code or use a different database."
            )
        else:
            self._logger.info(f"Database schema is up to date (v{db_version})")

        self._prune_on_startup()
        self._verify_integrity()

        self._initialized = True
        self._logger.info("Database initialized successfully")

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None
                self._initialized = False

    def _get_schema_version(self) -> Optional[int]:
        """Get the current schema version from the database."""
        try:
            cursor = self._conn.execute(
                "SELECT version FROM schema_version ORDER BY id DESC LIMIT 1"
            )
            row = cursor.fetchone()
            return row["version"] if row else None
        except sqlite3.OperationalError:
            # Table doesn't exist
            return None

    def _set_schema_version(self, version: int) -> None:
        self._conn.execute(
            "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
            (version, _utcnow().isoformat())
        )
        self._conn.commit()

    def _create_schema(self) -> None:
        """Create the initial database schema (v1)."""
        schema_sql = """
        CREATE TABLE IF NOT EXISTS schema_version (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            version INTEGER NOT NULL,
            applied_at TEXT NOT NULL
        );

        -- One row per dynamic tool, keyed by name
        CREATE TABLE IF NOT EXISTS dynamic_tools (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT UNIQUE NOT NULL,
            description TEXT NOT NULL,
            parameters TEXT NOT NULL DEFAULT '[]',
            code TEXT NOT NULL,
            capabilities TEXT NOT NULL DEFAULT '[]',
            created_at TEXT NOT NULL
        );

        -- Conversation history, ordered per session by seq
        CREATE TABLE IF NOT EXISTS turns (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            id TEXT UNIQUE NOT NULL,
            session_id TEXT NOT NULL,
            turn_id TEXT,
            role TEXT NOT NULL CHECK(role IN ('system', 'user', 'assistant', 'tool')),
            content TEXT NOT NULL,
            timestamp TEXT NOT NULL,
            meta TEXT DEFAULT '{}'
        );
        CREATE INDEX IF NOT EXISTS idx_turns_session ON turns(session_id, seq);

        CREATE TABLE IF NOT EXISTS notes (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            content TEXT NOT NULL,
            created_at TEXT NOT NULL
        );
        """

        self._conn.executescript(schema_sql)
        self._conn.commit()

    def _migrate(self, from_version: int, to_version: int) -> None:
        """
        Run migrations from one version to another.

        Each migration is atomic. A failure leaves the database at the last
        successful version.
        """
        migrations: Dict[int, str] = {}

        for version in range(from_version + 1, to_version + 1):
            if version in migrations:
                self._logger.info(f"Applying migration to v{version}")
                try:
                    self._conn.executescript(migrations[version])
                    self._set_schema_version(version)
                except sqlite3.Error as e:
                    raise MigrationFailedError(
                        f"Migration to v{version} failed: {e}. "
                        f"Database is at v{version - 1}. Manual intervention required."
                    ) from e
            else:
                self._set_schema_version(version)

    def _prune_on_startup(self) -> None:
        """Drop the oldest turns of any session above the retention limit."""
        cursor = self._conn.execute("""
            SELECT session_id, COUNT(*) AS turn_count
            FROM turns
            GROUP BY session_id
            HAVING turn_count > ?
        """, (MAX_TURNS_PER_SESSION,))

        for row in cursor.fetchall():
            excess = row["turn_count"] - MAX_TURNS_PER_SESSION
            self._conn.execute("""
                DELETE FROM turns
                WHERE seq IN (
                    SELECT seq FROM turns
                    WHERE session_id = ?
                    ORDER BY seq ASC
                    LIMIT ?
                )
            """, (row["session_id"], excess))
            self._logger.info(f"Pruned {excess} turns from session {row['session_id']}")

        self._conn.commit()

    def _verify_integrity(self) -> None:
        cursor = self._conn.execute("PRAGMA integrity_check")
        result = cursor.fetchone()[0]

        if result != "ok":
            raise DatabaseError(f"Database integrity check failed: {result}")

    @contextmanager
    def transaction(self) -> Generator[None, None, None]:
        """
        Context manager for explicit transactions.

        Nested calls join the outer transaction.

        Usage:
            with db.transaction():
                db.insert_tool(record)
                db.save_turn(turn)
        """
        if not self._initialized:
            raise DatabaseError("Database not initialized. Call initialize() first.")

        with self._lock:
            if self._in_transaction:
                yield
                return

            self._in_transaction = True
            try:
                yield
                self._conn.commit()
            except Exception as e:
                self._conn.rollback()
                self._logger.error(f"Transaction rolled back: {e}")
                raise
            finally:
                self._in_transaction = False

    def _commit_unless_in_transaction(self) -> None:
        if not self._in_transaction:
            self._conn.commit()

    def _require_connection(self) -> sqlite3.Connection:
        if self._conn is None or not self._initialized:
            raise DatabaseError("Database not initialized. Call initialize() first.")
        return self._conn

    # ===== Dynamic Tool Operations =====

    def insert_tool(self, record: ToolRecord) -> ToolRecord:
        """Insert a new dynamic tool. Raises DatabaseError on duplicate names."""
        with self._lock:
            conn = self._require_connection()
            try:
                cursor = conn.execute("""
                    INSERT INTO dynamic_tools (name, description, parameters, code, capabilities, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, (
                    record.name,
                    record.description,
                    json.dumps(record.parameters),
                    record.code,
                    json.dumps(list(record.capabilities)),
                    record.created_at.isoformat(),
                ))
            except sqlite3.IntegrityError as e:
                raise DatabaseError(f"Tool '{record.name}' already persisted: {e}") from e
            record.seq = cursor.lastrowid
            self._commit_unless_in_transaction()
            return record

    def delete_tool(self, name: str) -> bool:
        """Delete a dynamic tool. Returns False if it was not stored."""
        with self._lock:
            conn = self._require_connection()
            cursor = conn.execute("DELETE FROM dynamic_tools WHERE name = ?", (name,))
            self._commit_unless_in_transaction()
            return cursor.rowcount > 0

    def get_tool(self, name: str) -> Optional[ToolRecord]:
        with self._lock:
            conn = self._require_connection()
            row = conn.execute(
                "SELECT * FROM dynamic_tools WHERE name = ?", (name,)
            ).fetchone()
        return self._row_to_tool(row) if row else None

    def list_tools(self) -> List[ToolRecord]:
        """All dynamic tools in creation order."""
        with self._lock:
            conn = self._require_connection()
            rows = conn.execute(
                "SELECT * FROM dynamic_tools ORDER BY created_at ASC, seq ASC"
            ).fetchall()
        return [self._row_to_tool(row) for row in rows]

    @staticmethod
    def _row_to_tool(row: sqlite3.Row) -> ToolRecord:
        return ToolRecord(
            name=row["name"],
            description=row["description"],
            parameters=json.loads(row["parameters"] or "[]"),
            code=row["code"],
            capabilities=json.loads(row["capabilities"] or "[]"),
            created_at=datetime.fromisoformat(row["created_at"]),
            seq=row["seq"],
        )

    # ===== Turn Operations =====

    def save_turn(self, turn: TurnRecord) -> TurnRecord:
        """Append a turn to its session."""
        with self._lock:
            conn = self._require_connection()
            cursor = conn.execute("""
                INSERT INTO turns (id, session_id, turn_id, role, content, timestamp, meta)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                turn.id,
                turn.session_id,
                turn.turn_id,
                turn.role,
                turn.content,
                turn.timestamp.isoformat(),
                json.dumps(turn.meta, default=str),
            ))
            turn.seq = cursor.lastrowid
            self._commit_unless_in_transaction()
            return turn

    def get_turns(self, session_id: str) -> List[TurnRecord]:
        """Get a session's turns in append order."""
        with self._lock:
            conn = self._require_connection()
            rows = conn.execute("""
                SELECT * FROM turns
                WHERE session_id = ?
                ORDER BY seq ASC
            """, (session_id,)).fetchall()

        return [
            TurnRecord(
                id=row["id"],
                session_id=row["session_id"],
                turn_id=row["turn_id"] or "",
                role=row["role"],
                content=row["content"],
                timestamp=datetime.fromisoformat(row["timestamp"]),
                meta=json.loads(row["meta"] or "{}"),
                seq=row["seq"],
            )
            for row in rows
        ]

    def clear_turns(self, session_id: str) -> int:
        """Delete a session's history. Returns number of turns removed."""
        with self._lock:
            conn = self._require_connection()
            cursor = conn.execute("DELETE FROM turns WHERE session_id = ?", (session_id,))
            self._commit_unless_in_transaction()
            return cursor.rowcount

    # ===== Note Operations =====

    def save_note(self, note: NoteRecord) -> NoteRecord:
        with self._lock:
            conn = self._require_connection()
            conn.execute("""
                INSERT OR REPLACE INTO notes (id, title, content, created_at)
                VALUES (?, ?, ?, ?)
            """, (note.id, note.title, note.content, note.created_at.isoformat()))
            self._commit_unless_in_transaction()
            return note

    def list_notes(self) -> List[NoteRecord]:
        with self._lock:
            conn = self._require_connection()
            rows = conn.execute(
                "SELECT * FROM notes ORDER BY created_at ASC"
            ).fetchall()

        return [
            NoteRecord(
                id=row["id"],
                title=row["title"],
                content=row["content"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]
