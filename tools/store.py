"""
Tool Definition Store
---------------------
Durable name -> (schema, code) mapping for dynamic tools.

Rules:
- CRUD + validation only, no execution logic
- One writer at a time (process-wide lock)
- Durable write commits before the in-memory view changes
- Reserved (built-in) names can never be stored or deleted
"""

from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Set
import threading

from core.errors import InvalidSchemaError, NameCollisionError, NotFoundError
from infra.database import DatabaseError, DatabaseManager, ToolRecord
from infra.logging import get_logger

from .registry import (
    DynamicTool,
    ToolParameter,
    ToolSchema,
    parse_parameters,
    validate_tool_name,
)


def _record_to_tool(record: ToolRecord) -> DynamicTool:
    created_at = record.created_at
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return DynamicTool(
        schema=ToolSchema(
            name=record.name,
            description=record.description,
            parameters=parse_parameters(record.parameters),
        ),
        code=record.code,
        created_at=created_at,
        capabilities=tuple(record.capabilities),
    )


class ToolDefinitionStore:
    """
    Process-wide store of dynamic tool definitions.

    Loaded from the database on construction and kept in step with it:
    every put/delete is committed to SQLite before the cached view is
    updated, under a single lock.
    """

    def __init__(self, db: DatabaseManager, reserved_names: Iterable[str] = ()):
        self._db = db
        self._lock = threading.Lock()
        self._reserved: Set[str] = set(reserved_names)
        self._tools: Dict[str, DynamicTool] = {}
        self._logger = get_logger("tools.store")
        self._load()

    def _load(self) -> None:
        for record in self._db.list_tools():
            try:
                self._tools[record.name] = _record_to_tool(record)
            except InvalidSchemaError as e:
                self._logger.error(f"Skipping unreadable stored tool '{record.name}': {e}")
        self._logger.info(f"Loaded {len(self._tools)} dynamic tools")

    def reserve(self, names: Iterable[str]) -> None:
        """Mark names as taken by built-in tools."""
        with self._lock:
            for name in names:
                self._reserved.add(name)
                if name in self._tools:
                    self._logger.warning(
                        f"Stored tool '{name}' is shadowed by a built-in and will not resolve"
                    )

    def is_reserved(self, name: str) -> bool:
        return name in self._reserved

    def put(
        self,
        schema: ToolSchema,
        code: str,
        capabilities: Sequence[str] = (),
    ) -> DynamicTool:
        """
        Persist a new dynamic tool.

        Raises:
            InvalidSchemaError: bad name, empty code or malformed parameters
            NameCollisionError: name is reserved or already stored
        """
        validate_tool_name(schema.name)
        self._check_parameters(schema.parameters)
        if not isinstance(code, str) or not code.strip():
            raise InvalidSchemaError("Tool code must be a non-empty string")

        with self._lock:
            if schema.name in self._reserved:
                raise NameCollisionError(
                    f"Tool '{schema.name}' is a built-in tool and cannot be redefined"
                )
            if schema.name in self._tools:
                raise NameCollisionError(
                    f"Tool '{schema.name}' already exists. Use delete_tool first if you want to replace it."
                )

            record = ToolRecord(
                name=schema.name,
                description=schema.description,
                parameters=[p.to_record() for p in schema.parameters],
                code=code,
                capabilities=list(capabilities),
                created_at=datetime.now(timezone.utc),
            )
            try:
                self._db.insert_tool(record)
            except DatabaseError as e:
                raise NameCollisionError(str(e)) from e

            tool = DynamicTool(
                schema=schema,
                code=code,
                created_at=record.created_at,
                capabilities=tuple(capabilities),
            )
            self._tools[schema.name] = tool

        self._logger.info(f"Stored dynamic tool: {schema.name}")
        return tool

    @staticmethod
    def _check_parameters(parameters: List[ToolParameter]) -> None:
        names = [p.name for p in parameters]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise InvalidSchemaError(f"Duplicate parameter name: {', '.join(duplicates)}")

    def get(self, name: str) -> Optional[DynamicTool]:
        with self._lock:
            if name in self._reserved:
                return None
            return self._tools.get(name)

    def list(self) -> List[ToolSchema]:
        """Schemas of stored tools in creation order."""
        return [tool.schema for tool in self.list_definitions()]

    def list_definitions(self) -> List[DynamicTool]:
        with self._lock:
            return [
                tool for tool in self._tools.values()
                if tool.name not in self._reserved
            ]

    def delete(self, name: str) -> DynamicTool:
        """
        Remove a dynamic tool.

        Raises:
            NotFoundError: unknown or built-in name
        """
        with self._lock:
            if name in self._reserved:
                raise NotFoundError(f"Tool '{name}' is a built-in tool and cannot be deleted")
            tool = self._tools.get(name)
            if tool is None:
                raise NotFoundError(f"Tool '{name}' not found")

            self._db.delete_tool(name)
            del self._tools[name]

        self._logger.info(f"Deleted dynamic tool: {name}")
        return tool

    def __len__(self) -> int:
        return len(self.list_definitions())

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not None
