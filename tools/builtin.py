"""
Built-in Tools
--------------
Host-native tools fixed at process start, including the three that let
the model manage its own tools: create_tool, list_custom_tools and
delete_tool.

Handlers take the validated argument dict. They return text or
structured data and raise ToolsmithError subclasses for typed failures;
the engine turns those into Failure results of the matching kind.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from core.errors import (
    InvalidSchemaError,
    NameCollisionError,
    SecurityRejectedError,
)
from infra.logging import get_logger
from api.search import WebSearchClient
from memory.conversation import ConversationHistory
from memory.notes import NoteStore

from .calculator import calculate
from .registry import (
    BuiltinTool,
    ParameterType,
    ToolParameter,
    ToolRegistry,
    ToolSchema,
    validate_tool_name,
)
from .sandbox import ToolSandbox
from .security import SecurityManager


CREATE_TOOL_DESCRIPTION = (
    "Create a new reusable tool. `code` is the body of a Python function that "
    "receives a dict named `args` and returns the result, e.g. "
    "`return str(len(args['text'].split()))`. Imports are not allowed; request "
    "modules through `capabilities` (math, json, re, datetime, statistics, random) "
    "and use `network` to get a `fetch(url)` helper for allowlisted domains. "
    "Use f-strings rather than str.format, do not assign or delete attributes, "
    "and catch `Exception` rather than using a bare `except:`."
)


class BuiltinToolkit:
    """
    Owns the built-in handlers and their collaborators.

    Optional collaborators gate their tools: notes tools need a NoteStore,
    get_conversation needs a ConversationHistory.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        security: SecurityManager,
        sandbox: ToolSandbox,
        search: Optional[WebSearchClient] = None,
        notes: Optional[NoteStore] = None,
        history: Optional[ConversationHistory] = None,
        network_timeout: float = 15.0,
    ):
        self.registry = registry
        self.security = security
        self.sandbox = sandbox
        self.search = search or WebSearchClient(
            url_guard=security.is_url_allowed,
            timeout_seconds=network_timeout,
        )
        self.notes = notes
        self.history = history
        self.network_timeout = network_timeout
        self._logger = get_logger("tools.builtin")

    # ----- registration -----

    def build_tools(self) -> List[BuiltinTool]:
        web_timeout = self.network_timeout + 5.0
        tools = [
            BuiltinTool(
                schema=ToolSchema(
                    name="create_tool",
                    description=CREATE_TOOL_DESCRIPTION,
                    parameters=[
                        ToolParameter("name", ParameterType.STRING,
                                      "Tool name: lowercase letters, digits and underscores"),
                        ToolParameter("description", ParameterType.STRING,
                                      "What the tool does"),
                        ToolParameter("parameters_schema", ParameterType.OBJECT,
                                      "JSON Schema object, a {name: type} mapping, or a list "
                                      "of {name, type, description, required} records",
                                      also_accepts=(ParameterType.ARRAY,)),
                        ToolParameter("code", ParameterType.STRING,
                                      "Python function body using `args`; must return the result"),
                        ToolParameter("capabilities", ParameterType.ARRAY,
                                      "Capability tags the code needs", required=False),
                    ],
                ),
                handler=self._exec_create_tool,
                category="tools",
            ),
            BuiltinTool(
                schema=ToolSchema(
                    name="list_custom_tools",
                    description="List the tools created with create_tool",
                ),
                handler=self._exec_list_custom_tools,
                category="tools",
            ),
            BuiltinTool(
                schema=ToolSchema(
                    name="delete_tool",
                    description="Delete a tool created with create_tool",
                    parameters=[
                        ToolParameter("name", ParameterType.STRING, "Name of the tool to delete"),
                    ],
                ),
                handler=self._exec_delete_tool,
                category="tools",
            ),
            BuiltinTool(
                schema=ToolSchema(
                    name="calculate",
                    description=(
                        "Evaluate an arithmetic expression. Supports + - * / ^ %, "
                        "parentheses, sqrt sin cos tan abs log ln exp, pi and e"
                    ),
                    parameters=[
                        ToolParameter("expression", ParameterType.STRING, "Expression to evaluate"),
                    ],
                ),
                handler=lambda args: calculate(args["expression"]),
                category="math",
            ),
            BuiltinTool(
                schema=ToolSchema(
                    name="get_current_time",
                    description="Get the current local date and time",
                ),
                handler=self._exec_get_time,
                category="system",
            ),
            BuiltinTool(
                schema=ToolSchema(
                    name="web_search",
                    description="Search the web for information",
                    parameters=[
                        ToolParameter("query", ParameterType.STRING, "Search query"),
                    ],
                ),
                handler=lambda args: self.search.search(args["query"]),
                category="web",
                timeout_seconds=web_timeout,
            ),
            BuiltinTool(
                schema=ToolSchema(
                    name="fetch_url",
                    description="Fetch a web page from an allowed domain and return its text",
                    parameters=[
                        ToolParameter("url", ParameterType.STRING, "URL to fetch"),
                    ],
                ),
                handler=lambda args: self.search.fetch(args["url"]),
                category="web",
                timeout_seconds=web_timeout,
            ),
            BuiltinTool(
                schema=ToolSchema(
                    name="research",
                    description=(
                        "Research a topic: search the web, fetch the top sources "
                        "and return a combined report"
                    ),
                    parameters=[
                        ToolParameter("topic", ParameterType.STRING, "Topic to research"),
                        ToolParameter("depth", ParameterType.STRING,
                                      "How many sources to read (default: normal)",
                                      required=False, enum=["quick", "normal", "deep"]),
                    ],
                ),
                handler=lambda args: self.search.research(args["topic"], args.get("depth", "normal")),
                category="web",
                timeout_seconds=web_timeout * 4,
            ),
        ]

        if self.notes is not None:
            tools.append(BuiltinTool(
                schema=ToolSchema(
                    name="save_note",
                    description="Save a note for later",
                    parameters=[
                        ToolParameter("title", ParameterType.STRING, "Note title"),
                        ToolParameter("content", ParameterType.STRING, "Note content"),
                    ],
                ),
                handler=self._exec_save_note,
                category="notes",
            ))
            tools.append(BuiltinTool(
                schema=ToolSchema(name="read_notes", description="Read all saved notes"),
                handler=lambda args: self.notes.render(),
                category="notes",
            ))

        if self.history is not None:
            tools.append(BuiltinTool(
                schema=ToolSchema(
                    name="get_conversation",
                    description="Get the current conversation history",
                    parameters=[
                        ToolParameter("format", ParameterType.STRING, "Output format",
                                      required=False, enum=["text", "markdown", "summary"]),
                    ],
                ),
                handler=lambda args: self.history.render(args.get("format", "markdown")),
                category="memory",
            ))

        return tools

    def register_all(self) -> List[str]:
        """Register every built-in and reserve the names. Returns the names."""
        names = []
        for tool in self.build_tools():
            self.registry.register_builtin(tool)
            names.append(tool.name)
        self.security.reserve_names(names)
        self._logger.info(f"Registered {len(names)} built-in tools")
        return names

    # ----- tool management -----

    @staticmethod
    def _parse_capabilities(raw: Any) -> List[str]:
        if raw is None:
            return []
        if not isinstance(raw, list) or not all(isinstance(c, str) for c in raw):
            raise InvalidSchemaError("capabilities must be a list of strings")
        return list(dict.fromkeys(raw))

    def _exec_create_tool(self, args: Dict[str, Any]) -> str:
        """Validate, vet and store a dynamic tool."""
        # Name collisions are reported before anything else about the request
        name = validate_tool_name(args["name"])
        if self.registry.is_builtin(name):
            raise NameCollisionError(
                f"Tool '{name}' is a built-in tool and cannot be redefined"
            )
        if name in self.registry.store:
            raise NameCollisionError(
                f"Tool '{name}' already exists. Use delete_tool first if you want to replace it."
            )

        schema = ToolSchema.parse(name, args["description"], args["parameters_schema"])
        code = args["code"]
        capabilities = self._parse_capabilities(args.get("capabilities"))

        verdict = self.security.vet_definition(schema, code, capabilities)
        if not verdict.allowed:
            raise SecurityRejectedError(verdict.reason)

        tool = self.registry.store.put(schema, code, capabilities)
        self.sandbox.evict(tool.name)
        self._logger.info(f"Created dynamic tool: {tool.name}")

        return (
            f"Tool '{tool.name}' created successfully.\n\n"
            f"Description: {schema.description}\n\n"
            f"You can now use this tool by calling it with the appropriate parameters."
        )

    def _exec_list_custom_tools(self, args: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [
            {
                "name": tool.name,
                "description": tool.schema.description,
                "parameters": tool.schema.to_json_schema(),
                "capabilities": list(tool.capabilities),
                "created_at": tool.created_at.isoformat(),
            }
            for tool in self.registry.store.list_definitions()
        ]

    def _exec_delete_tool(self, args: Dict[str, Any]) -> str:
        name = args["name"]
        self.registry.store.delete(name)
        self.sandbox.evict(name)
        self.security.forget_tool(name)
        self._logger.info(f"Deleted dynamic tool: {name}")
        return f"Tool '{name}' deleted successfully."

    # ----- everyday tools -----

    def _exec_get_time(self, args: Dict[str, Any]) -> str:
        now = datetime.now().astimezone()
        return f"Current date and time: {now.strftime('%Y-%m-%d %H:%M:%S %Z')}"

    def _exec_save_note(self, args: Dict[str, Any]) -> str:
        note = self.notes.save(args["title"], args["content"])
        return f"Note '{note.title}' saved successfully"


def register_builtin_tools(
    registry: ToolRegistry,
    security: SecurityManager,
    sandbox: ToolSandbox,
    **collaborators: Any,
) -> BuiltinToolkit:
    """Build a BuiltinToolkit and register all of its tools."""
    toolkit = BuiltinToolkit(registry, security, sandbox, **collaborators)
    toolkit.register_all()
    return toolkit
