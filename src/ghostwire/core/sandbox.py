"""
The one place where source text shipped by the controller becomes code.

Page scripts see a reduced builtins table and whatever names the owning
object puts in its scope, so they cannot import modules or open files by
name. This is not an isolation boundary: attribute access on ordinary
objects still reaches the interpreter's classes.
"""

import ast
import builtins
from typing import Any, Callable, Dict, Optional

from .errors import ScriptError

_ALLOWED_BUILTINS = (
    "abs", "all", "any", "bool", "callable", "chr", "dict", "divmod",
    "enumerate", "filter", "float", "format", "frozenset", "getattr",
    "hasattr", "hash", "int", "isinstance", "issubclass", "iter", "len",
    "list", "map", "max", "min", "next", "ord", "pow", "range", "repr",
    "reversed", "round", "set", "slice", "sorted", "str", "sum", "tuple",
    "type", "zip", "print",
    "Exception", "ValueError", "TypeError", "KeyError", "IndexError",
    "RuntimeError", "ZeroDivisionError", "AttributeError", "StopIteration",
    "True", "False", "None",
)

SAFE_BUILTINS: Dict[str, Any] = {
    name: getattr(builtins, name) for name in _ALLOWED_BUILTINS if hasattr(builtins, name)
}


def new_scope(**names) -> Dict[str, Any]:
    """A fresh script namespace with the restricted builtins."""
    scope: Dict[str, Any] = {"__builtins__": dict(SAFE_BUILTINS), "__name__": "__page__"}
    scope.update(names)
    return scope


def compile_callable(source: str, scope: Dict[str, Any], filename: str = "<injected>") -> Callable:
    """
    Turn source text into a callable bound to ``scope``.

    Accepts either one expression that evaluates to a callable
    (``"lambda x: x * 2"``) or a module whose last statement is a ``def``.
    """
    if not isinstance(source, str) or not source.strip():
        raise ScriptError("function source must be a non-empty string")

    text = source.strip()
    try:
        tree = ast.parse(text, filename=filename, mode="eval")
    except SyntaxError:
        tree = None

    if tree is not None:
        try:
            fn = eval(compile(tree, filename, "eval"), scope)
        except Exception as e:
            raise ScriptError(f"{type(e).__name__}: {e}") from e
    else:
        try:
            module = ast.parse(text, filename=filename, mode="exec")
        except SyntaxError as e:
            raise ScriptError(f"SyntaxError: {e.msg} (line {e.lineno})") from e
        if not module.body or not isinstance(
            module.body[-1], (ast.FunctionDef, ast.AsyncFunctionDef)
        ):
            raise ScriptError("source must be an expression or end with a def")
        name = module.body[-1].name
        try:
            exec(compile(module, filename, "exec"), scope)
        except Exception as e:
            raise ScriptError(f"{type(e).__name__}: {e}") from e
        fn = scope[name]

    if not callable(fn):
        raise ScriptError(f"source evaluated to {type(fn).__name__}, not a callable")
    return fn


def run_script(source: str, scope: Dict[str, Any], filename: str = "<script>") -> Optional[Any]:
    """Execute a whole script inside ``scope``; names it defines stay there."""
    try:
        code = compile(source, filename, "exec")
    except SyntaxError as e:
        raise ScriptError(f"SyntaxError: {e.msg} (line {e.lineno})") from e
    exec(code, scope)
    return scope.get("__result__")
