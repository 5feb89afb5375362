"""
Restricted execution of generated tool code.

Generated code is checked against an AST deny-list, then run in a separate
isolated interpreter (`python -I`) with a reduced builtins table and a
wall-clock bound. Nothing in the engine process is reachable from the
payload: it sees only a JSON copy of its input and returns a JSON result.
Two payload shapes are accepted:

    def run(input):            # preferred: a function over the input dict
        return {"total": sum(input["values"])}

    result = input["a"] + input["b"]   # bare body; `result` is returned

Imports are rejected. The pure modules json, math, re and statistics are
pre-bound as globals.
"""

import ast
import asyncio
import json
import logging
import subprocess
import sys
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0

SAFE_BUILTINS = (
    "abs",
    "min",
    "max",
    "sum",
    "len",
    "range",
    "enumerate",
    "zip",
    "sorted",
    "reversed",
    "map",
    "filter",
    "all",
    "any",
    "round",
    "int",
    "float",
    "bool",
    "str",
    "list",
    "dict",
    "set",
    "tuple",
    "isinstance",
    "Exception",
    "ValueError",
    "KeyError",
    "TypeError",
)

PRELOADED_MODULES = ("json", "math", "re", "statistics")

BANNED_NAMES = frozenset(
    {
        "os",
        "sys",
        "subprocess",
        "socket",
        "shutil",
        "pathlib",
        "open",
        "eval",
        "exec",
        "compile",
        "__import__",
        "importlib",
        "globals",
        "locals",
        "vars",
        "getattr",
        "setattr",
        "delattr",
        "breakpoint",
    }
)

# Frame, code and traceback introspection
BANNED_ATTRIBUTES = frozenset(
    {
        "gi_frame",
        "gi_code",
        "gi_yieldfrom",
        "cr_frame",
        "cr_code",
        "cr_await",
        "ag_frame",
        "ag_code",
        "tb_frame",
        "tb_next",
        "f_back",
        "f_locals",
        "f_globals",
        "f_builtins",
        "f_code",
    }
)

BANNED_NODES = (
    ast.Import,
    ast.ImportFrom,
    ast.With,
    ast.AsyncWith,
    ast.Global,
    ast.Nonlocal,
    ast.Await,
    ast.Yield,
    ast.YieldFrom,
    ast.GeneratorExp,
    ast.AsyncFunctionDef,
    ast.ClassDef,
)

# Runs in the child interpreter; reads one JSON request from stdin and
# writes one JSON reply to stdout.
_RUNNER = r"""
import builtins, json, math, re, statistics, sys

def main():
    request = json.load(sys.stdin)
    namespace = {
        "__builtins__": {name: getattr(builtins, name) for name in request["builtins"]},
        "json": json,
        "math": math,
        "re": re,
        "statistics": statistics,
    }
    try:
        code = compile(request["code"], "<generated_tool>", "exec")
        if request["bare"]:
            namespace["input"] = request["input"]
            exec(code, namespace)
            result = namespace.get("result")
        else:
            exec(code, namespace)
            fn = namespace.get(request["entrypoint"])
            if not callable(fn):
                raise NameError(request["entrypoint"] + " is not defined")
            result = fn(request["input"])
        reply = {"ok": True, "result": result}
    except Exception as e:
        reply = {"ok": False, "error_type": type(e).__name__, "error": str(e)}
    sys.stdout.write(json.dumps(reply, default=str))

main()
"""


class SandboxViolation(ValueError):
    """Code uses a construct the sandbox does not allow."""

    pass


class GeneratedCodeError(RuntimeError):
    """Generated code raised, or its interpreter died."""

    def __init__(self, message: str, error_type: str | None = None):
        super().__init__(message)
        self.error_type = error_type


class SandboxTimeout(GeneratedCodeError):
    pass


class _Checker(ast.NodeVisitor):
    def visit_Name(self, node: ast.Name) -> None:
        if node.id in BANNED_NAMES:
            raise SandboxViolation(f"Use of banned name: {node.id}")

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if node.attr.startswith("_"):
            raise SandboxViolation(f"Banned private attribute: {node.attr}")
        if node.attr in BANNED_ATTRIBUTES:
            raise SandboxViolation(f"Banned introspection attribute: {node.attr}")
        self.generic_visit(node)

    def generic_visit(self, node: ast.AST) -> None:
        if isinstance(node, BANNED_NODES):
            raise SandboxViolation(f"Banned node type: {type(node).__name__}")
        super().generic_visit(node)


class CodeSandbox:
    """
    Compiles generated code into an async callable over an input dict.

    Example:
        sandbox = CodeSandbox(timeout_seconds=5)
        fn = sandbox.compile_function("def run(input):\\n    return input['x'] * 2")
        await fn({"x": 21})  # -> 42
    """

    def __init__(self, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS):
        self.timeout_seconds = timeout_seconds

    def check(self, code: str) -> str | None:
        """Return a reason string if the code is rejected, else None."""
        try:
            tree = ast.parse(code, mode="exec")
        except SyntaxError as e:
            return f"SyntaxError: {e}"
        try:
            _Checker().visit(tree)
        except SandboxViolation as e:
            return str(e)
        return None

    def _validate(self, code: str, entrypoint: str) -> bool:
        """Check the code; returns True for a bare body without an entrypoint."""
        problem = self.check(code)
        if problem:
            raise SandboxViolation(problem)
        return not any(
            isinstance(node, ast.FunctionDef) and node.name == entrypoint
            for node in ast.parse(code).body
        )

    def run_sync(
        self,
        code: str,
        tool_input: dict[str, Any],
        entrypoint: str = "run",
        bare: bool = False,
    ) -> Any:
        """
        Run already-checked code once in a child interpreter.

        Raises:
            SandboxTimeout: If the child exceeds timeout_seconds (it is killed)
            GeneratedCodeError: If the code raises or the child fails
        """
        request = json.dumps(
            {
                "code": code,
                "input": tool_input,
                "entrypoint": entrypoint,
                "bare": bare,
                "builtins": SAFE_BUILTINS,
            },
            default=str,
        )
        try:
            completed = subprocess.run(
                [sys.executable, "-I", "-c", _RUNNER],
                input=request,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as e:
            logger.warning(f"      ⚠ Generated code timed out after {self.timeout_seconds}s")
            raise SandboxTimeout(
                f"Generated code exceeded {self.timeout_seconds}s", error_type="Timeout"
            ) from e

        if completed.returncode != 0 or not completed.stdout:
            detail = completed.stderr.strip().splitlines()[-1:] or ["no output"]
            raise GeneratedCodeError(
                f"Generated code process exited with {completed.returncode}: {detail[0]}"
            )

        reply = json.loads(completed.stdout)
        if not reply["ok"]:
            raise GeneratedCodeError(
                f"{reply['error_type']}: {reply['error']}", error_type=reply["error_type"]
            )
        return reply["result"]

    def compile_function(
        self, code: str, entrypoint: str = "run"
    ) -> Callable[[dict], Awaitable[Any]]:
        """
        Validate code and return an async callable taking the tool input dict.

        Nothing from the payload runs until the callable is awaited.

        Raises:
            SandboxViolation: If the code fails the AST check
        """
        bare = self._validate(code, entrypoint)

        async def run_generated(tool_input: dict) -> Any:
            return await asyncio.to_thread(self.run_sync, code, dict(tool_input), entrypoint, bare)

        return run_generated


def safe_exec(code: str, tool_input: dict[str, Any], entrypoint: str = "run") -> Any:
    """Check and run generated code once against an input dict (blocking)."""
    sandbox = CodeSandbox()
    bare = sandbox._validate(code, entrypoint)
    return sandbox.run_sync(code, tool_input, entrypoint, bare)
