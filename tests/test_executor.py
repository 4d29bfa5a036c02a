"""
Execution Engine Tests
----------------------
Resolve, vet, run and normalize; invoke() never raises.
"""

import time

from core.errors import ErrorKind
from tools.executor import ExecutionEngine, InvocationRequest, InvocationResult
from tools.registry import BuiltinTool, ParameterType, ToolParameter, ToolSchema


WORD_COUNTER = {
    "name": "word_counter",
    "description": "Count the words in a text",
    "parameters_schema": {
        "type": "object",
        "properties": {"text": {"type": "string"}},
        "required": ["text"],
    },
    "code": "return str(len(args['text'].split()))",
}


def _invoke(engine, name, /, **arguments):
    return engine.invoke(InvocationRequest(tool_name=name, arguments=arguments))


class TestInvocationResult:

    def test_render_structured_value_as_json(self):
        result = InvocationResult.ok("t", [{"a": 1}])
        assert result.render() == '[{"a": 1}]'

    def test_render_failure(self):
        result = InvocationResult.failure("t", ErrorKind.TIMEOUT, "too slow")
        assert not result.success
        assert result.render() == "TIMEOUT: too slow"


class TestBuiltinInvocation:

    def test_calculate(self, engine):
        result = _invoke(engine, "calculate", expression="2^3")
        assert result.success
        assert result.value == "Result: 8"
        assert result.execution_time_ms >= 0

    def test_unknown_tool(self, engine):
        result = _invoke(engine, "does_not_exist")
        assert result.error_kind == ErrorKind.UNKNOWN_TOOL
        assert "does_not_exist" in result.message

    def test_schema_violation_never_starts(self, registry, security, sandbox):
        calls = []
        registry.register_builtin(BuiltinTool(
            schema=ToolSchema("echo", "Echo", [ToolParameter("text", ParameterType.STRING)]),
            handler=lambda args: calls.append(args) or args["text"],
        ))
        engine = ExecutionEngine(registry, security, sandbox)

        result = _invoke(engine, "echo", text=7)
        assert result.error_kind == ErrorKind.SECURITY_REJECTED
        assert calls == []

    def test_handler_exception_is_execution_fault(self, registry, security, sandbox):
        def broken(args):
            raise RuntimeError("disk on fire")

        registry.register_builtin(BuiltinTool(schema=ToolSchema("broken", "Broken"), handler=broken))
        engine = ExecutionEngine(registry, security, sandbox)

        result = _invoke(engine, "broken")
        assert result.error_kind == ErrorKind.EXECUTION_FAULT
        assert "RuntimeError: disk on fire" in result.message

    def test_builtin_timeout_releases_caller(self, registry, security, sandbox):
        registry.register_builtin(BuiltinTool(
            schema=ToolSchema("sleepy", "Sleeps"),
            handler=lambda args: time.sleep(1.0) or "late",
            timeout_seconds=0.1,
        ))
        engine = ExecutionEngine(registry, security, sandbox)

        start = time.perf_counter()
        result = _invoke(engine, "sleepy")
        elapsed = time.perf_counter() - start

        assert result.error_kind == ErrorKind.TIMEOUT
        assert elapsed < 0.9

    def test_turn_and_call_ids_attached(self, engine):
        result = engine.invoke(
            InvocationRequest("calculate", {"expression": "1+1"}, call_id="call_1"),
            turn_id="turn_abc",
        )
        assert result.call_id == "call_1"
        assert result.turn_id == "turn_abc"


class TestDynamicInvocation:

    def test_create_invoke_delete(self, engine):
        """word_counter is usable right after creation and gone after deletion."""
        created = engine.invoke(InvocationRequest("create_tool", dict(WORD_COUNTER)))
        assert created.success, created.message

        result = _invoke(engine, "word_counter", text="the quick brown fox")
        assert result.success
        assert result.value == "4"

        deleted = _invoke(engine, "delete_tool", name="word_counter")
        assert deleted.success

        gone = _invoke(engine, "word_counter", text="the quick brown fox")
        assert gone.error_kind == ErrorKind.UNKNOWN_TOOL

    def test_runaway_loop_times_out(self, engine):
        spec = dict(WORD_COUNTER, name="spin", code="while True:\n    pass")
        assert engine.invoke(InvocationRequest("create_tool", spec)).success

        engine.default_timeout = 0.3
        start = time.perf_counter()
        result = _invoke(engine, "spin", text="x")
        elapsed = time.perf_counter() - start

        assert result.error_kind == ErrorKind.TIMEOUT
        assert elapsed < 2.0

    def test_tool_exception_is_execution_fault(self, engine):
        spec = dict(WORD_COUNTER, name="divide", code="return 1 / 0")
        assert engine.invoke(InvocationRequest("create_tool", spec)).success

        result = _invoke(engine, "divide", text="x")
        assert result.error_kind == ErrorKind.EXECUTION_FAULT
        assert "ZeroDivisionError" in result.message

    def test_engine_survives_failures(self, engine):
        """A failing call does not affect the next one."""
        _invoke(engine, "calculate", expression="1/0")
        assert _invoke(engine, "calculate", expression="6*7").value == "Result: 42"
