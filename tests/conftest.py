"""
Toolsmith Test Configuration
----------------------------
Shared fixtures for all tests.

Tests are hermetic: every database lives under tmp_path and no test
reaches the network (HTTP goes through httpx.MockTransport).
"""

import sys
from pathlib import Path
from typing import Any, List

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from api.providers import FinalText, ToolCallRequest, ToolCalls
from core.errors import ProviderError
from infra.database import DatabaseManager
from tools.executor import ExecutionEngine
from tools.registry import ToolRegistry
from tools.sandbox import ToolSandbox
from tools.security import SecurityManager
from tools.store import ToolDefinitionStore


class ScriptedProvider:
    """
    Provider double that replays a fixed list of responses.

    Each item is a ModelResponse or an exception to raise. Every submit()
    records a snapshot of the history it received.
    """

    def __init__(self, responses: List[Any], name: str = "scripted", model: str = "test-model"):
        self.name = name
        self.model = model
        self._responses = list(responses)
        self.submissions: List[list] = []
        self.tool_lists: List[list] = []

    async def submit(self, history, tools):
        self.submissions.append(list(history))
        self.tool_lists.append([schema.name for schema in tools])
        if not self._responses:
            return FinalText(text="(script exhausted)")
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    @property
    def calls(self) -> int:
        return len(self.submissions)


def call(name: str, /, **arguments) -> ToolCalls:
    """Single tool call response."""
    return ToolCalls(calls=[ToolCallRequest(name=name, arguments=arguments)])


@pytest.fixture(scope="session")
def project_root():
    """Return the project root path."""
    return PROJECT_ROOT


@pytest.fixture
def temp_db(tmp_path):
    """Initialized database in a temporary directory."""
    db = DatabaseManager(str(tmp_path / "toolsmith.db"))
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def store(temp_db):
    return ToolDefinitionStore(temp_db)


@pytest.fixture
def registry(store):
    return ToolRegistry(store)


@pytest.fixture
def security():
    return SecurityManager()


@pytest.fixture
def sandbox(security):
    return ToolSandbox(url_guard=security.is_url_allowed)


@pytest.fixture
def toolkit(registry, security, sandbox, temp_db):
    """All built-ins registered, with notes but no conversation tool."""
    from memory.notes import NoteStore
    from tools.builtin import register_builtin_tools
    return register_builtin_tools(registry, security, sandbox, notes=NoteStore(temp_db))


@pytest.fixture
def engine(registry, security, sandbox, toolkit):
    return ExecutionEngine(registry, security, sandbox, default_timeout=2.0)


@pytest.fixture
def provider_error():
    return ProviderError("scripted request failed: Server error: 503", provider="scripted", status_code=503)
