"""Restricted execution of script steps."""

import ast
import asyncio
import builtins
import inspect
import logging
from dataclasses import dataclass
from types import SimpleNamespace
from typing import Any, Callable

from soapflow.services.api_testing.errors import ScriptFailure, ScriptPolicyError

logger = logging.getLogger("soapflow.script")

# Pure data helpers and exception classes; nothing that reaches the host.
SAFE_BUILTIN_NAMES = (
    "abs", "all", "any", "bool", "dict", "divmod", "enumerate", "filter",
    "float", "int", "isinstance", "len", "list", "map", "max", "min",
    "range", "repr", "reversed", "round", "set", "sorted", "str", "sum",
    "tuple", "zip",
    "Exception", "ValueError", "KeyError", "IndexError", "TypeError",
    "RuntimeError", "ZeroDivisionError", "AssertionError",
)

# Attributes that lead from ordinary objects back to frames, code or globals
BLOCKED_ATTRIBUTES = frozenset({
    "gi_frame", "gi_code", "gi_yieldfrom", "cr_frame", "cr_code", "cr_await",
    "ag_frame", "ag_code", "f_globals", "f_locals", "f_builtins", "f_back",
    "f_code", "tb_frame", "tb_next", "format", "format_map", "mro",
})


@dataclass
class ScriptCapabilities:
    """Everything a script can reach."""
    log: Callable[[str], None]
    context: dict
    goto: Callable[[str], None]


class _PolicyVisitor(ast.NodeVisitor):
    def visit_Import(self, node: ast.Import) -> None:
        raise ScriptPolicyError(f"Imports are not allowed in scripts (line {node.lineno})")

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        raise ScriptPolicyError(f"Imports are not allowed in scripts (line {node.lineno})")

    def visit_Global(self, node: ast.Global) -> None:
        raise ScriptPolicyError(f"'global' is not allowed in scripts (line {node.lineno})")

    def visit_Nonlocal(self, node: ast.Nonlocal) -> None:
        raise ScriptPolicyError(f"'nonlocal' is not allowed in scripts (line {node.lineno})")

    def visit_Name(self, node: ast.Name) -> None:
        if node.id.startswith("_"):
            raise ScriptPolicyError(f"Name '{node.id}' is not allowed in scripts (line {node.lineno})")
        self.generic_visit(node)

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if node.attr.startswith("_") or node.attr in BLOCKED_ATTRIBUTES:
            raise ScriptPolicyError(
                f"Attribute '{node.attr}' is not allowed in scripts (line {node.lineno})"
            )
        self.generic_visit(node)

    def visit_MatchClass(self, node: ast.MatchClass) -> None:
        # Keyword sub-patterns read attributes without an ast.Attribute node
        for attr in node.kwd_attrs:
            if attr.startswith("_") or attr in BLOCKED_ATTRIBUTES:
                raise ScriptPolicyError(
                    f"Attribute '{attr}' is not allowed in scripts (line {node.lineno})"
                )
        self.generic_visit(node)

    def visit_MatchAs(self, node: ast.MatchAs) -> None:
        self._check_capture(node.name, node.lineno)
        self.generic_visit(node)

    def visit_MatchStar(self, node: ast.MatchStar) -> None:
        self._check_capture(node.name, node.lineno)
        self.generic_visit(node)

    def visit_MatchMapping(self, node: ast.MatchMapping) -> None:
        self._check_capture(node.rest, node.lineno)
        self.generic_visit(node)

    def _check_capture(self, name: str | None, lineno: int) -> None:
        if name and name.startswith("_"):
            raise ScriptPolicyError(f"Name '{name}' is not allowed in scripts (line {lineno})")

    def visit_FunctionDef(self, node: ast.FunctionDef) -> None:
        self._check_arguments(node.args)
        self.generic_visit(node)

    def visit_AsyncFunctionDef(self, node: ast.AsyncFunctionDef) -> None:
        self._check_arguments(node.args)
        self.generic_visit(node)

    def _check_arguments(self, args: ast.arguments) -> None:
        for arg in args.posonlyargs + args.args + args.kwonlyargs:
            if arg.arg.startswith("_"):
                raise ScriptPolicyError(f"Argument '{arg.arg}' is not allowed in scripts")


class ScriptSandbox:
    """
    Runs Python script steps against an explicit capability set.

    The script body sees exactly log, context, fail, delay, goto and console
    plus a reduced set of data builtins. Source is validated before it is
    compiled; imports, underscore names and frame attributes are rejected.
    Top-level ``await`` is allowed so scripts can ``await delay(ms)``.
    """

    def __init__(self):
        self._builtins = {name: getattr(builtins, name) for name in SAFE_BUILTIN_NAMES}

    @staticmethod
    def step_logger(prefix: str) -> Callable[[str], None]:
        """Logger handed to scripts as log() and console.log()."""
        def step_log(message: Any) -> None:
            logger.info(f"{prefix} {message}")
        return step_log

    def validate(self, source: str) -> ast.Module:
        """Parse and policy-check script source."""
        try:
            tree = ast.parse(source, filename="<script>", mode="exec")
        except SyntaxError as e:
            raise ScriptPolicyError(f"Script syntax error: {e.msg} (line {e.lineno})") from e
        _PolicyVisitor().visit(tree)
        return tree

    async def run(self, source: str | None, capabilities: ScriptCapabilities) -> None:
        """
        Execute script source.

        Raises:
            ScriptPolicyError: source uses a disallowed construct
            ScriptFailure: the script called fail(reason)
            Exception: any other uncaught error raised by the script
        """
        if not source or not source.strip():
            return

        tree = self.validate(source)
        code = compile(tree, "<script>", "exec", flags=ast.PyCF_ALLOW_TOP_LEVEL_AWAIT)

        namespace = self._build_namespace(capabilities)
        result = eval(code, namespace)
        if inspect.isawaitable(result):
            await result

    def _build_namespace(self, capabilities: ScriptCapabilities) -> dict[str, Any]:
        step_log = capabilities.log

        def fail(reason: Any = "Script failed") -> None:
            raise ScriptFailure(str(reason))

        async def delay(ms: Any) -> None:
            step_log(f"Delaying {ms}ms")
            await asyncio.sleep(max(float(ms), 0) / 1000)

        return {
            "__builtins__": dict(self._builtins),
            "log": step_log,
            "context": capabilities.context,
            "fail": fail,
            "delay": delay,
            "goto": capabilities.goto,
            "console": SimpleNamespace(log=step_log),
        }
