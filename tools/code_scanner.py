"""
Code Scanner
------------
Static AST scan of model-authored tool code before it is stored.

Tool code is the body of a function of `args`. The scanner wraps it the
same way the sandbox does, parses it, and runs a set of visitors that
report prohibited patterns.

Rules:
- No imports of any kind (capabilities inject modules instead)
- No dynamic code execution or namespace introspection
- No dunder access or dunder method definitions
- No frame, code or traceback attributes (they lead back to host globals)
- No assigning or deleting attributes of injected objects
- No handlers that could swallow the sandbox deadline
- No references to host process or filesystem primitives
- URL literals are collected for the domain allowlist check
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set
import ast
import logging
import re
import textwrap

ENTRY_POINT = "_tool_entry"

URL_PATTERN = re.compile(r"https?://[^\s'\"<>]+", re.IGNORECASE)

logger = logging.getLogger("toolsmith.tools.code_scanner")


def wrap_tool_source(code: str) -> str:
    """Turn a tool body into a module defining ENTRY_POINT(args)."""
    body = textwrap.dedent(code).strip("\n")
    if not body.strip():
        body = "pass"
    return f"def {ENTRY_POINT}(args):\n{textwrap.indent(body, '    ')}\n"


class RiskLevel(Enum):
    """Risk level for detected patterns."""
    LOW = "low"            # Logged only
    MEDIUM = "medium"      # Blocked when block_medium_risk is set
    HIGH = "high"          # Blocked by default
    CRITICAL = "critical"  # Always blocked


@dataclass
class SecurityIssue:
    """A detected problem in tool code."""
    rule_id: str
    description: str
    risk_level: RiskLevel
    line_number: int
    matched_code: str

    def to_dict(self) -> Dict:
        return {
            "rule_id": self.rule_id,
            "description": self.description,
            "level": self.risk_level.value,
            "line": self.line_number,
            "code": self.matched_code[:100],
        }


@dataclass
class ScanResult:
    """Result of scanning tool code."""
    is_safe: bool
    issues: List[SecurityIssue] = field(default_factory=list)
    blocked: bool = False
    block_reason: Optional[str] = None
    urls: List[str] = field(default_factory=list)


class BaseSecurityVisitor(ast.NodeVisitor):
    """Base class for security-focused AST visitors."""

    def __init__(self):
        self.issues: List[SecurityIssue] = []

    def add_issue(
        self,
        rule_id: str,
        description: str,
        risk_level: RiskLevel,
        node: ast.AST,
    ) -> None:
        try:
            matched_code = ast.unparse(node)
        except Exception:
            matched_code = "<unparseable>"

        # Line 1 is the synthetic def line
        line = max(0, getattr(node, "lineno", 1) - 1)
        self.issues.append(SecurityIssue(
            rule_id=rule_id,
            description=description,
            risk_level=risk_level,
            line_number=line,
            matched_code=matched_code,
        ))


class ImportVisitor(BaseSecurityVisitor):
    """Any import statement is refused."""

    def visit_Import(self, node: ast.Import):
        names = ", ".join(alias.name for alias in node.names)
        self.add_issue("IMPORT001", f"Import of '{names}' is not allowed", RiskLevel.CRITICAL, node)

    def visit_ImportFrom(self, node: ast.ImportFrom):
        self.add_issue(
            "IMPORT002",
            f"Import from '{node.module or '.'}' is not allowed",
            RiskLevel.CRITICAL,
            node,
        )


class DangerousNameVisitor(BaseSecurityVisitor):
    """References to execution, introspection and host primitives."""

    EXECUTION_NAMES: Set[str] = {
        "exec", "eval", "compile", "__import__", "breakpoint",
    }
    INTROSPECTION_NAMES: Set[str] = {
        "getattr", "setattr", "delattr", "globals", "locals", "vars",
        "dir", "type", "object", "super", "memoryview", "help",
    }
    HOST_NAMES: Set[str] = {
        "open", "input", "exit", "quit",
        "os", "sys", "subprocess", "socket", "shutil", "pathlib", "ctypes",
        "importlib", "builtins", "signal", "threading", "multiprocessing",
        "pickle", "marshal", "io", "tempfile", "glob", "requests", "httpx",
        "urllib", "asyncio",
    }

    def visit_Name(self, node: ast.Name):
        if node.id in self.EXECUTION_NAMES:
            self.add_issue("EXEC001", f"Dynamic code execution via {node.id}", RiskLevel.CRITICAL, node)
        elif node.id in self.INTROSPECTION_NAMES:
            self.add_issue("INTRO001", f"Introspection via {node.id} is not allowed", RiskLevel.HIGH, node)
        elif node.id in self.HOST_NAMES:
            self.add_issue("HOST001", f"Access to host primitive '{node.id}'", RiskLevel.CRITICAL, node)
        self.generic_visit(node)


class DunderVisitor(BaseSecurityVisitor):
    """Dunder attributes and names lead out of the namespace."""

    def visit_Attribute(self, node: ast.Attribute):
        if node.attr.startswith("__") and node.attr.endswith("__"):
            self.add_issue("DUNDER001", f"Access to '{node.attr}' is not allowed", RiskLevel.CRITICAL, node)
        elif node.attr.startswith("_"):
            self.add_issue("PRIVATE001", f"Access to private attribute '{node.attr}'", RiskLevel.HIGH, node)
        self.generic_visit(node)

    def visit_Name(self, node: ast.Name):
        if node.id.startswith("__"):
            self.add_issue("DUNDER002", f"Use of name '{node.id}' is not allowed", RiskLevel.CRITICAL, node)
        self.generic_visit(node)

    def visit_Constant(self, node: ast.Constant):
        # "__class__" and friends as strings feed getattr-style tricks
        if isinstance(node.value, str) and re.search(r"__\w+__", node.value):
            self.add_issue("DUNDER003", "String literal names a dunder attribute", RiskLevel.HIGH, node)

    def visit_FunctionDef(self, node: ast.FunctionDef):
        if node.name.startswith("__") and node.name.endswith("__"):
            self.add_issue("DUNDER004", f"Defining '{node.name}' is not allowed", RiskLevel.CRITICAL, node)
        self.generic_visit(node)


class FrameVisitor(BaseSecurityVisitor):
    """Generator, frame, code and traceback attributes, plus str.format."""

    FRAME_ATTRIBUTES: Set[str] = {
        "gi_frame", "gi_code", "gi_yieldfrom",
        "cr_frame", "cr_code", "cr_await",
        "ag_frame", "ag_code", "ag_await",
        "f_back", "f_globals", "f_locals", "f_builtins", "f_code", "f_trace",
        "tb_frame", "tb_next",
        "co_code", "co_consts", "co_names",
    }
    FORMAT_ATTRIBUTES: Set[str] = {"format", "format_map"}

    def visit_Attribute(self, node: ast.Attribute):
        if node.attr in self.FRAME_ATTRIBUTES:
            self.add_issue("FRAME001", f"Access to '{node.attr}' is not allowed", RiskLevel.CRITICAL, node)
        elif node.attr in self.FORMAT_ATTRIBUTES:
            # Format fields can walk attributes: "{0.gi_frame}"
            self.add_issue("FORMAT001", f"str.{node.attr} is not allowed; use f-strings", RiskLevel.HIGH, node)
        self.generic_visit(node)


class MutationVisitor(BaseSecurityVisitor):
    """Attribute writes reach shared objects such as capability modules."""

    def visit_Attribute(self, node: ast.Attribute):
        if isinstance(node.ctx, ast.Store):
            self.add_issue("MUTATE001", f"Assigning attribute '{node.attr}' is not allowed", RiskLevel.CRITICAL, node)
        elif isinstance(node.ctx, ast.Del):
            self.add_issue("MUTATE002", f"Deleting attribute '{node.attr}' is not allowed", RiskLevel.CRITICAL, node)
        self.generic_visit(node)


class HandlerVisitor(BaseSecurityVisitor):
    """
    Exception handlers that could outlive the deadline.

    The deadline is a BaseException raised from the trace hook. Python
    drops the hook once it raises, so code that catches it, or keeps
    looping in a finally block, would run on untraced.
    """

    CATCH_ALL: Set[str] = {"BaseException"}

    def visit_ExceptHandler(self, node: ast.ExceptHandler):
        if node.type is None:
            self.add_issue("EXCEPT001", "Bare 'except:' is not allowed; catch Exception", RiskLevel.CRITICAL, node)
        else:
            caught = node.type.elts if isinstance(node.type, ast.Tuple) else [node.type]
            for expr in caught:
                if isinstance(expr, ast.Name) and expr.id in self.CATCH_ALL:
                    self.add_issue("EXCEPT002", f"Catching {expr.id} is not allowed", RiskLevel.CRITICAL, node)
        self.generic_visit(node)

    def visit_Try(self, node: ast.Try):
        for statement in node.finalbody:
            for child in ast.walk(statement):
                if isinstance(child, (ast.While, ast.For)):
                    self.add_issue("EXCEPT003", "Loops inside 'finally' are not allowed", RiskLevel.CRITICAL, child)
                    break
        self.generic_visit(node)


class ScopeVisitor(BaseSecurityVisitor):
    """Writes outside the tool's own scope."""

    def visit_Global(self, node: ast.Global):
        self.add_issue("SCOPE001", "global statements are not allowed", RiskLevel.HIGH, node)

    def visit_Nonlocal(self, node: ast.Nonlocal):
        self.add_issue("SCOPE002", "nonlocal statements are not allowed", RiskLevel.MEDIUM, node)


class UrlCollector(ast.NodeVisitor):
    """Collects URL literals for the allowlist check."""

    def __init__(self):
        self.urls: List[str] = []

    def visit_Constant(self, node: ast.Constant):
        if isinstance(node.value, str):
            self.urls.extend(URL_PATTERN.findall(node.value))


class CodeScanner:
    """
    Combined scanner for tool code.

    Critical findings always block; high findings block unless disabled.
    """

    def __init__(self, block_high_risk: bool = True, block_medium_risk: bool = False):
        self.block_high_risk = block_high_risk
        self.block_medium_risk = block_medium_risk

    def scan(self, code: str) -> ScanResult:
        """Scan a tool body and decide whether it may be stored."""
        if not code or not code.strip():
            return ScanResult(is_safe=False, blocked=True, block_reason="Tool code is empty")

        try:
            tree = ast.parse(wrap_tool_source(code))
        except SyntaxError as e:
            line = max(0, (e.lineno or 1) - 1)
            return ScanResult(
                is_safe=False,
                blocked=True,
                block_reason=f"Code does not parse (line {line}): {e.msg}",
            )

        all_issues: List[SecurityIssue] = []
        visitors = [
            ImportVisitor(),
            DangerousNameVisitor(),
            DunderVisitor(),
            FrameVisitor(),
            MutationVisitor(),
            HandlerVisitor(),
            ScopeVisitor(),
        ]
        for visitor in visitors:
            visitor.visit(tree)
            all_issues.extend(visitor.issues)

        collector = UrlCollector()
        collector.visit(tree)

        for issue in all_issues:
            logger.warning(
                f"[{issue.risk_level.value.upper()}] {issue.rule_id}: "
                f"{issue.description} (line {issue.line_number})"
            )

        result = self._build_result(all_issues)
        result.urls = collector.urls
        return result

    def _build_result(self, issues: List[SecurityIssue]) -> ScanResult:
        """Build final result with blocking decision."""
        critical = [i for i in issues if i.risk_level == RiskLevel.CRITICAL]
        high = [i for i in issues if i.risk_level == RiskLevel.HIGH]
        medium = [i for i in issues if i.risk_level == RiskLevel.MEDIUM]

        blocked = False
        block_reason = None

        if critical:
            blocked = True
            block_reason = f"{critical[0].description} (line {critical[0].line_number})"
        elif high and self.block_high_risk:
            blocked = True
            block_reason = f"{high[0].description} (line {high[0].line_number})"
        elif medium and self.block_medium_risk:
            blocked = True
            block_reason = f"{medium[0].description} (line {medium[0].line_number})"

        return ScanResult(
            is_safe=not issues,
            issues=issues,
            blocked=blocked,
            block_reason=block_reason,
        )
