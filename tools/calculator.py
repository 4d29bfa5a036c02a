"""
Calculator
----------
Arithmetic evaluator behind the `calculate` built-in.

Expressions are parsed with `ast` and walked node by node; nothing is
evaluated that is not in the operator and function tables below.
"""

from typing import Callable, Dict, Union
import ast
import math
import operator

Number = Union[int, float]

MAX_EXPRESSION_CHARS = 500
MAX_EXPONENT = 10_000


class CalculationError(ValueError):
    """Expression could not be evaluated."""
    pass


BINARY_OPERATORS: Dict[type, Callable[[Number, Number], Number]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

UNARY_OPERATORS: Dict[type, Callable[[Number], Number]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}

FUNCTIONS: Dict[str, Callable[[Number], Number]] = {
    "sqrt": math.sqrt,
    "sin": math.sin,
    "cos": math.cos,
    "tan": math.tan,
    "abs": abs,
    "log": math.log,   # natural log, same as ln
    "ln": math.log,
    "exp": math.exp,
}

CONSTANTS: Dict[str, float] = {
    "pi": math.pi,
    "e": math.e,
}


def evaluate(expression: str) -> Number:
    """
    Evaluate an arithmetic expression.

    `^` is exponentiation. Raises CalculationError for anything the
    tables do not cover, and for division by zero or domain errors.
    """
    if not expression or not expression.strip():
        raise CalculationError("Expression is empty")
    if len(expression) > MAX_EXPRESSION_CHARS:
        raise CalculationError(f"Expression longer than {MAX_EXPRESSION_CHARS} characters")

    source = expression.strip().replace("^", "**")
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError:
        raise CalculationError(f"Cannot evaluate: {expression.strip()}") from None

    try:
        return _eval_node(tree.body)
    except ZeroDivisionError:
        raise CalculationError("Division by zero") from None
    except (ValueError, OverflowError) as e:
        if isinstance(e, CalculationError):
            raise
        raise CalculationError(f"Math error: {e}") from None


def _eval_node(node: ast.AST) -> Number:
    if isinstance(node, ast.Constant):
        if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
            raise CalculationError(f"Unsupported literal: {node.value!r}")
        return node.value

    if isinstance(node, ast.Name):
        if node.id in CONSTANTS:
            return CONSTANTS[node.id]
        raise CalculationError(f"Unknown name: {node.id}")

    if isinstance(node, ast.BinOp):
        op = BINARY_OPERATORS.get(type(node.op))
        if op is None:
            raise CalculationError(f"Unsupported operator: {type(node.op).__name__}")
        left = _eval_node(node.left)
        right = _eval_node(node.right)
        if isinstance(node.op, ast.Pow) and abs(right) > MAX_EXPONENT:
            raise CalculationError(f"Exponent too large: {right}")
        return op(left, right)

    if isinstance(node, ast.UnaryOp):
        op = UNARY_OPERATORS.get(type(node.op))
        if op is None:
            raise CalculationError(f"Unsupported operator: {type(node.op).__name__}")
        return op(_eval_node(node.operand))

    if isinstance(node, ast.Call):
        if not isinstance(node.func, ast.Name) or node.func.id not in FUNCTIONS:
            name = getattr(node.func, "id", "?")
            raise CalculationError(f"Unknown function: {name}")
        if len(node.args) != 1 or node.keywords:
            raise CalculationError(f"{node.func.id}() takes exactly one argument")
        return FUNCTIONS[node.func.id](_eval_node(node.args[0]))

    raise CalculationError(f"Unsupported expression element: {type(node).__name__}")


def format_number(value: Number) -> str:
    """Integral floats print without a trailing .0"""
    if isinstance(value, float) and value.is_integer() and abs(value) < 1e16:
        return str(int(value))
    return str(value)


def calculate(expression: str) -> str:
    return f"Result: {format_number(evaluate(expression))}"
