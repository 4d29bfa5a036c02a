# Tools module - Tool registry, definition store, security and execution
# Every tool call passes registry -> security manager -> execution engine
# This package is the firewall between the model and the host

from .registry import (
    ToolRegistry, ToolSchema, ToolParameter, ParameterType,
    BuiltinTool, DynamicTool, ToolDefinition,
)
from .store import ToolDefinitionStore
from .security import SecurityManager, SecurityPolicy, SecurityVerdict
from .sandbox import ToolSandbox
from .executor import ExecutionEngine, InvocationRequest, InvocationResult
from .builtin import BuiltinToolkit, register_builtin_tools

__all__ = [
    "ToolRegistry",
    "ToolSchema",
    "ToolParameter",
    "ParameterType",
    "BuiltinTool",
    "DynamicTool",
    "ToolDefinition",
    "ToolDefinitionStore",
    "SecurityManager",
    "SecurityPolicy",
    "SecurityVerdict",
    "ToolSandbox",
    "ExecutionEngine",
    "InvocationRequest",
    "InvocationResult",
    "BuiltinToolkit",
    "register_builtin_tools",
]
