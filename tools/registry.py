"""
Tool Registry
-------------
Typed tool definitions and the single lookup surface over built-in and
dynamic tools.

Rules:
- Built-in names are reserved and can never be shadowed
- Built-ins are listed first, dynamic tools after, in creation order
- Parameter schemas are validated when parsed, never at call time only

Exit Criterion: Every tool the model can see is resolvable by name.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple, Union
import logging
import re

from core.errors import InvalidSchemaError

if TYPE_CHECKING:
    from .store import ToolDefinitionStore


TOOL_NAME_PATTERN = re.compile(r"^[a-z0-9_]{1,64}$")


class ParameterType(str, Enum):
    """Supported parameter type tags."""
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"


class ToolKind(str, Enum):
    BUILTIN = "builtin"
    DYNAMIC = "dynamic"


def validate_tool_name(name: Any) -> str:
    """Return the name if it matches the identifier pattern, else raise."""
    if not isinstance(name, str) or not TOOL_NAME_PATTERN.match(name):
        raise InvalidSchemaError(
            f"Invalid tool name {name!r}: use 1-64 lowercase letters, digits or underscores"
        )
    return name


@dataclass
class ToolParameter:
    """Definition of a tool parameter."""
    name: str
    type: ParameterType
    description: str = ""
    required: bool = True
    enum: Optional[List[Any]] = None  # Allowed values
    also_accepts: Tuple[ParameterType, ...] = ()  # Built-ins only; not persisted

    @property
    def accepted_types(self) -> Tuple[ParameterType, ...]:
        return (self.type,) + tuple(self.also_accepts)

    def to_json_schema(self) -> Dict:
        """Convert to JSON Schema format."""
        types = [t.value for t in self.accepted_types]
        schema: Dict[str, Any] = {"type": types[0] if len(types) == 1 else types}
        if self.description:
            schema["description"] = self.description
        if self.enum:
            schema["enum"] = list(self.enum)
        return schema

    def to_record(self) -> Dict[str, Any]:
        """Flat form used for persistence."""
        record: Dict[str, Any] = {
            "name": self.name,
            "type": self.type.value,
            "description": self.description,
            "required": self.required,
        }
        if self.enum:
            record["enum"] = list(self.enum)
        return record


def _parse_type(field_name: str, tag: Any) -> ParameterType:
    try:
        return ParameterType(tag)
    except ValueError:
        valid = ", ".join(t.value for t in ParameterType)
        raise InvalidSchemaError(
            f"Unknown type {tag!r} for parameter '{field_name}' (expected one of: {valid})"
        ) from None


def _parse_property(field_name: str, spec: Any, required: bool) -> ToolParameter:
    """Parse one property given either as a type tag or a JSON Schema fragment."""
    if not isinstance(field_name, str) or not field_name:
        raise InvalidSchemaError(f"Parameter names must be non-empty strings, got {field_name!r}")

    if isinstance(spec, str):
        return ToolParameter(name=field_name, type=_parse_type(field_name, spec), required=required)

    if not isinstance(spec, dict):
        raise InvalidSchemaError(f"Parameter '{field_name}' must be a type name or an object")

    if "type" not in spec:
        raise InvalidSchemaError(f"Parameter '{field_name}' is missing a type")

    enum = spec.get("enum")
    if enum is not None and not isinstance(enum, list):
        raise InvalidSchemaError(f"Parameter '{field_name}' enum must be a list")

    description = spec.get("description", "")
    if not isinstance(description, str):
        raise InvalidSchemaError(f"Parameter '{field_name}' description must be a string")

    return ToolParameter(
        name=field_name,
        type=_parse_type(field_name, spec["type"]),
        description=description,
        required=bool(spec.get("required", required)),
        enum=enum,
    )


def parse_parameters(raw: Any) -> List[ToolParameter]:
    """
    Parse a parameter schema into ordered ToolParameters.

    Accepted shapes:
    - JSON Schema: {"type": "object", "properties": {...}, "required": [...]}
    - Shorthand mapping: {"text": "string", "count": {"type": "integer"}}
    - Record list: [{"name": "text", "type": "string", "required": true}]

    Raises InvalidSchemaError on unknown type tags, duplicate field names
    or any other structural problem.
    """
    if raw is None:
        return []

    if isinstance(raw, list):
        params: List[ToolParameter] = []
        seen = set()
        for item in raw:
            if not isinstance(item, dict) or "name" not in item:
                raise InvalidSchemaError("Each parameter record needs a 'name' and a 'type'")
            param = _parse_property(item["name"], item, required=True)
            if param.name in seen:
                raise InvalidSchemaError(f"Duplicate parameter name: {param.name}")
            seen.add(param.name)
            params.append(param)
        return params

    if not isinstance(raw, dict):
        raise InvalidSchemaError("Parameter schema must be an object or a list")

    if "properties" in raw or raw.get("type") == "object":
        if raw.get("type", "object") != "object":
            raise InvalidSchemaError("Top-level parameter schema type must be 'object'")

        properties = raw.get("properties", {})
        if not isinstance(properties, dict):
            raise InvalidSchemaError("'properties' must be an object")

        required = raw.get("required", [])
        if not isinstance(required, list) or not all(isinstance(r, str) for r in required):
            raise InvalidSchemaError("'required' must be a list of parameter names")
        if len(set(required)) != len(required):
            raise InvalidSchemaError("Duplicate names in 'required'")
        missing = [r for r in required if r not in properties]
        if missing:
            raise InvalidSchemaError(f"Required parameters not declared: {', '.join(missing)}")

        return [
            _parse_property(name, spec, required=name in required)
            for name, spec in properties.items()
        ]

    return [_parse_property(name, spec, required=True) for name, spec in raw.items()]


@dataclass
class ToolSchema:
    """Name, description and parameters of a tool."""
    name: str
    description: str
    parameters: List[ToolParameter] = field(default_factory=list)

    @classmethod
    def parse(cls, name: Any, description: Any, parameters_schema: Any) -> "ToolSchema":
        """Validate raw fields (e.g. from create_tool) into a schema."""
        validate_tool_name(name)
        if not isinstance(description, str) or not description.strip():
            raise InvalidSchemaError("Tool description must be a non-empty string")
        return cls(
            name=name,
            description=description.strip(),
            parameters=parse_parameters(parameters_schema),
        )

    def to_json_schema(self) -> Dict:
        """Convert parameters to a full JSON Schema object."""
        properties = {}
        required = []

        for param in self.parameters:
            properties[param.name] = param.to_json_schema()
            if param.required:
                required.append(param.name)

        return {
            "type": "object",
            "properties": properties,
            "required": required,
            "additionalProperties": False
        }

    def to_openai_function(self) -> Dict:
        """Convert to OpenAI function calling format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.to_json_schema()
            }
        }

    def validate_args(self, args: Any) -> Tuple[bool, Optional[str]]:
        """
        Validate arguments against schema.
        Returns (is_valid, error_message).
        """
        if not isinstance(args, dict):
            return False, f"Arguments must be an object, got {type(args).__name__}"

        known_params = {p.name for p in self.parameters}
        for arg_name in args:
            if arg_name not in known_params:
                return False, f"Unknown parameter: {arg_name}"

        for param in self.parameters:
            if param.name not in args:
                if param.required:
                    return False, f"Missing required parameter: {param.name}"
                continue

            value = args[param.name]

            if not any(_matches_type(value, t) for t in param.accepted_types):
                expected = " or ".join(t.value for t in param.accepted_types)
                return False, f"Invalid type for {param.name}: expected {expected}"

            if param.enum and value not in param.enum:
                return False, f"Invalid value for {param.name}: must be one of {param.enum}"

        return True, None


def _matches_type(value: Any, expected: ParameterType) -> bool:
    # bool is an int subclass; keep the two apart
    if expected in (ParameterType.INTEGER, ParameterType.NUMBER) and isinstance(value, bool):
        return False
    type_map = {
        ParameterType.STRING: str,
        ParameterType.INTEGER: int,
        ParameterType.NUMBER: (int, float),
        ParameterType.BOOLEAN: bool,
        ParameterType.ARRAY: list,
        ParameterType.OBJECT: dict,
    }
    return isinstance(value, type_map[expected])


@dataclass
class BuiltinTool:
    """
    Host-native tool fixed at process start.

    The handler receives the validated argument dict. It returns a string
    or structured data, and raises to report failure.
    """
    schema: ToolSchema
    handler: Callable[[Dict[str, Any]], Any]
    category: str = "general"
    timeout_seconds: Optional[float] = None

    kind = ToolKind.BUILTIN

    @property
    def name(self) -> str:
        return self.schema.name

    def __repr__(self) -> str:
        return f"BuiltinTool(name={self.name}, category={self.category})"


@dataclass
class DynamicTool:
    """Model-authored tool backed by the definition store."""
    schema: ToolSchema
    code: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    capabilities: Tuple[str, ...] = ()
    timeout_seconds: Optional[float] = None

    kind = ToolKind.DYNAMIC

    @property
    def name(self) -> str:
        return self.schema.name

    def __repr__(self) -> str:
        return f"DynamicTool(name={self.name}, capabilities={list(self.capabilities)})"


ToolDefinition = Union[BuiltinTool, DynamicTool]


class ToolRegistry:
    """
    Registry for all available tools.

    Built-ins live here; dynamic tools are delegated to the store.
    """

    def __init__(self, store: "ToolDefinitionStore"):
        self._store = store
        self._builtins: Dict[str, BuiltinTool] = {}
        self._logger = logging.getLogger("toolsmith.tools.registry")

    @property
    def store(self) -> "ToolDefinitionStore":
        return self._store

    def register_builtin(self, tool: BuiltinTool) -> None:
        """Register a built-in tool and reserve its name."""
        if tool.name in self._builtins:
            raise ValueError(f"Built-in tool already registered: {tool.name}")

        self._builtins[tool.name] = tool
        self._store.reserve([tool.name])
        self._logger.info(f"Registered built-in tool: {tool.name} ({tool.category})")

    def resolve(self, name: str) -> Optional[ToolDefinition]:
        """Look up a tool, built-ins first."""
        builtin = self._builtins.get(name)
        if builtin is not None:
            return builtin
        return self._store.get(name)

    def is_builtin(self, name: str) -> bool:
        return name in self._builtins

    def builtin_names(self) -> List[str]:
        return list(self._builtins)

    def list_all(self) -> List[ToolSchema]:
        """Built-in schemas, then dynamic schemas in creation order."""
        builtin_schemas = [tool.schema for tool in self._builtins.values()]
        return builtin_schemas + self._store.list()

    def get_schemas_for_llm(self) -> List[Dict]:
        """Get all tool schemas in OpenAI function format."""
        return [schema.to_openai_function() for schema in self.list_all()]

    def __len__(self) -> int:
        return len(self._builtins) + len(self._store)

    def __contains__(self, name: str) -> bool:
        return self.resolve(name) is not None
