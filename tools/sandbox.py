"""
Dynamic Tool Sandbox
--------------------
Runs model-authored tool code inside a restricted namespace.

The namespace holds only:
- `args`, a private deep copy of the validated arguments
- a minimal builtins table (no import, open, exec, getattr, ...)
- views of the modules granted by the tool's capability tags (public
  functions and classes copied into a fresh namespace object per run, so
  rebinding a name never touches the host's module)
- `fetch(url)` when the `network` capability is granted

Rules:
- Tool code cannot reach the registry, the store or other tools
- Pure-Python loops are interrupted at the deadline by a trace hook
"""

from typing import Any, Callable, Dict, Optional, Tuple
import copy
import datetime
import json
import logging
import math
import random
import re
import statistics
import sys
import time
import types

import httpx

from core.errors import SecurityRejectedError, ToolTimeoutError

from .code_scanner import ENTRY_POINT, wrap_tool_source
from .registry import DynamicTool


SAFE_BUILTINS: Dict[str, Any] = {
    "abs": abs, "all": all, "any": any, "bool": bool, "chr": chr,
    "dict": dict, "divmod": divmod, "enumerate": enumerate, "filter": filter,
    "float": float, "format": format, "frozenset": frozenset, "hash": hash,
    "int": int, "isinstance": isinstance, "iter": iter, "len": len,
    "list": list, "map": map, "max": max, "min": min, "next": next,
    "ord": ord, "pow": pow, "range": range, "repr": repr,
    "reversed": reversed, "round": round, "set": set, "slice": slice,
    "sorted": sorted, "str": str, "sum": sum, "tuple": tuple, "zip": zip,
    "True": True, "False": False, "None": None,
    "Exception": Exception, "ValueError": ValueError, "TypeError": TypeError,
    "KeyError": KeyError, "IndexError": IndexError,
    "ZeroDivisionError": ZeroDivisionError,
}

CAPABILITY_MODULES: Dict[str, Any] = {
    "math": math,
    "json": json,
    "re": re,
    "datetime": datetime,
    "statistics": statistics,
    "random": random,
}

MAX_FETCH_CHARS = 20_000


def _public_members(module: types.ModuleType) -> types.MappingProxyType:
    """Public, non-module attributes of a capability module."""
    members = {
        name: value
        for name, value in vars(module).items()
        if not name.startswith("_") and not isinstance(value, types.ModuleType)
    }
    return types.MappingProxyType(members)


CAPABILITY_MEMBERS: Dict[str, types.MappingProxyType] = {
    name: _public_members(module) for name, module in CAPABILITY_MODULES.items()
}


def module_view(capability: str) -> types.SimpleNamespace:
    """A fresh namespace object holding the capability's public members."""
    return types.SimpleNamespace(**CAPABILITY_MEMBERS[capability])


class _DeadlineExceeded(BaseException):
    """Raised inside tool code by the trace hook; not catchable as Exception."""


class ToolSandbox:
    """
    Compiles and runs DynamicTool code.

    Compiled code objects are cached per (name, created_at) so a tool that
    is deleted and recreated under the same name is recompiled.
    """

    def __init__(
        self,
        url_guard: Optional[Callable[[str], Any]] = None,
        network_timeout: float = 15.0,
        http_client_factory: Callable[..., httpx.Client] = httpx.Client,
    ):
        self._url_guard = url_guard
        self._network_timeout = network_timeout
        self._http_client_factory = http_client_factory
        self._cache: Dict[Tuple[str, str], Any] = {}
        self._logger = logging.getLogger("toolsmith.tools.sandbox")

    def compile(self, tool: DynamicTool):
        key = (tool.name, tool.created_at.isoformat())
        code_obj = self._cache.get(key)
        if code_obj is None:
            code_obj = compile(wrap_tool_source(tool.code), f"<tool:{tool.name}>", "exec")
            self._cache[key] = code_obj
        return code_obj

    def evict(self, name: str) -> None:
        for key in [k for k in self._cache if k[0] == name]:
            del self._cache[key]

    def build_namespace(self, tool: DynamicTool) -> Dict[str, Any]:
        namespace: Dict[str, Any] = {"__builtins__": dict(SAFE_BUILTINS)}
        for capability in tool.capabilities:
            if capability in CAPABILITY_MODULES:
                namespace[capability] = module_view(capability)
            elif capability == "network":
                namespace["fetch"] = self._make_fetch(tool.name)
        return namespace

    def _make_fetch(self, tool_name: str) -> Callable[[str], str]:
        def fetch(url: str) -> str:
            if self._url_guard is not None:
                verdict = self._url_guard(url)
                if not verdict.allowed:
                    raise SecurityRejectedError(verdict.reason)
            self._logger.info(f"Tool '{tool_name}' fetching {url}")
            with self._http_client_factory(
                timeout=self._network_timeout, follow_redirects=False
            ) as client:
                response = client.get(url)
                response.raise_for_status()
                return response.text[:MAX_FETCH_CHARS]
        return fetch

    def run(self, tool: DynamicTool, args: Dict[str, Any], timeout: Optional[float] = None) -> str:
        """
        Execute the tool body and return its result as text.

        Raises:
            ToolTimeoutError: the deadline passed while the code was running
            Exception: whatever the tool code raised
        """
        code_obj = self.compile(tool)
        namespace = self.build_namespace(tool)
        exec(code_obj, namespace)
        entry = namespace[ENTRY_POINT]

        private_args = copy.deepcopy(args)
        if timeout is None:
            value = entry(private_args)
        else:
            value = self._call_with_deadline(entry, private_args, tool, timeout)

        if value is None:
            return ""
        return value if isinstance(value, str) else str(value)

    def _call_with_deadline(self, entry, args, tool: DynamicTool, timeout: float) -> Any:
        deadline = time.monotonic() + timeout
        filename = f"<tool:{tool.name}>"

        def local_trace(frame, event, arg):
            if time.monotonic() > deadline:
                raise _DeadlineExceeded()
            return local_trace

        def global_trace(frame, event, arg):
            # Only frames of the tool's own code are traced
            if frame.f_code.co_filename == filename:
                return local_trace
            return None

        previous = sys.gettrace()
        sys.settrace(global_trace)
        try:
            return entry(args)
        except _DeadlineExceeded:
            raise ToolTimeoutError(
                f"Tool '{tool.name}' exceeded {timeout:g}s and was interrupted"
            ) from None
        finally:
            sys.settrace(previous)
