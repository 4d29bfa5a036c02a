"""
Tool Definition Store Tests
---------------------------
CRUD, reserved names and durability across restarts.
"""

import threading

import pytest

from core.errors import InvalidSchemaError, NameCollisionError, NotFoundError
from infra.database import DatabaseManager
from tools.registry import ParameterType, ToolParameter, ToolSchema
from tools.store import ToolDefinitionStore


def _counter_schema(name="word_counter"):
    return ToolSchema(
        name=name,
        description="Count words",
        parameters=[ToolParameter("text", ParameterType.STRING, "Text")],
    )


class TestPutAndGet:

    def test_put_then_get(self, store):
        tool = store.put(_counter_schema(), "return str(len(args['text'].split()))", ["math"])

        fetched = store.get("word_counter")
        assert fetched is tool
        assert fetched.capabilities == ("math",)
        assert fetched.created_at.tzinfo is not None
        assert "word_counter" in store
        assert len(store) == 1

    def test_duplicate_name_collides(self, store):
        store.put(_counter_schema(), "return 'a'")
        with pytest.raises(NameCollisionError, match="already exists"):
            store.put(_counter_schema(), "return 'b'")
        assert store.get("word_counter").code == "return 'a'"

    def test_reserved_name_collides(self, temp_db):
        store = ToolDefinitionStore(temp_db, reserved_names=["calculate"])
        with pytest.raises(NameCollisionError, match="built-in"):
            store.put(_counter_schema("calculate"), "return 1")
        assert len(store) == 0

    def test_invalid_name(self, store):
        with pytest.raises(InvalidSchemaError):
            store.put(ToolSchema("Bad-Name", "x"), "return 1")

    def test_empty_code(self, store):
        with pytest.raises(InvalidSchemaError, match="code"):
            store.put(_counter_schema(), "   ")

    def test_duplicate_parameter_names(self, store):
        schema = ToolSchema("dup", "x", parameters=[
            ToolParameter("a", ParameterType.STRING),
            ToolParameter("a", ParameterType.INTEGER),
        ])
        with pytest.raises(InvalidSchemaError, match="Duplicate"):
            store.put(schema, "return 1")

    def test_list_in_creation_order(self, store):
        for name in ("charlie", "alpha", "bravo"):
            store.put(ToolSchema(name, "x"), "return 1")
        assert [s.name for s in store.list()] == ["charlie", "alpha", "bravo"]


class TestDelete:

    def test_delete_then_get_absent(self, store):
        store.put(_counter_schema(), "return 'a'")
        removed = store.delete("word_counter")

        assert removed.name == "word_counter"
        assert store.get("word_counter") is None
        assert store.list() == []

    def test_delete_unknown(self, store):
        with pytest.raises(NotFoundError):
            store.delete("missing")

    def test_delete_reserved(self, store):
        store.reserve(["calculate"])
        with pytest.raises(NotFoundError, match="built-in"):
            store.delete("calculate")

    def test_name_reusable_after_delete(self, store):
        store.put(_counter_schema(), "return 'old'")
        store.delete("word_counter")
        store.put(_counter_schema(), "return 'new'")
        assert store.get("word_counter").code == "return 'new'"


class TestDurability:

    def test_definitions_survive_restart(self, tmp_path):
        """A committed put is visible to a store opened on the same file."""
        path = str(tmp_path / "tools.db")

        db = DatabaseManager(path)
        db.initialize()
        ToolDefinitionStore(db).put(_counter_schema(), "return str(len(args['text'].split()))", ["re"])
        db.close()

        db = DatabaseManager(path)
        db.initialize()
        reopened = ToolDefinitionStore(db)
        tool = reopened.get("word_counter")
        db.close()

        assert tool is not None
        assert tool.schema.parameters[0].name == "text"
        assert tool.schema.parameters[0].type == ParameterType.STRING
        assert tool.capabilities == ("re",)

    def test_delete_survives_restart(self, tmp_path):
        path = str(tmp_path / "tools.db")

        db = DatabaseManager(path)
        db.initialize()
        store = ToolDefinitionStore(db)
        store.put(_counter_schema(), "return 'a'")
        store.delete("word_counter")
        db.close()

        db = DatabaseManager(path)
        db.initialize()
        assert ToolDefinitionStore(db).get("word_counter") is None
        db.close()

    def test_reserved_shadows_stored_tool(self, store):
        """A stored tool whose name becomes reserved no longer resolves."""
        store.put(_counter_schema("ping"), "return 1")
        store.reserve(["ping"])
        assert store.get("ping") is None
        assert store.list() == []


class TestConcurrency:

    def test_concurrent_put_same_name(self, store):
        """Racing creators of one name: exactly one wins, the rest collide."""
        workers = 8
        barrier = threading.Barrier(workers)
        outcomes = []

        def create(index):
            barrier.wait()
            try:
                store.put(_counter_schema(), f"return '{index}'")
                outcomes.append("created")
            except NameCollisionError:
                outcomes.append("collision")

        threads = [threading.Thread(target=create, args=(i,)) for i in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert sorted(outcomes) == ["collision"] * (workers - 1) + ["created"]
        assert len(store) == 1
        assert len(store.list_definitions()) == 1

    def test_concurrent_put_and_delete(self, store, temp_db):
        """Interleaved puts and deletes leave memory and disk in agreement."""
        names = [f"tool_{i}" for i in range(6)]
        for name in names[:3]:
            store.put(_counter_schema(name), "return 1")

        barrier = threading.Barrier(len(names))
        errors = []

        def churn(name):
            barrier.wait()
            try:
                if name in names[:3]:
                    store.delete(name)
                else:
                    store.put(_counter_schema(name), "return 2")
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=churn, args=(name,)) for name in names]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert errors == []
        assert sorted(s.name for s in store.list()) == names[3:]
        assert sorted(record.name for record in temp_db.list_tools()) == names[3:]
