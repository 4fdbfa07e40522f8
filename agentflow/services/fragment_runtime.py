"""
Runtime for node logic fragments.

A fragment is the body of an async function. It receives `context` (an
ExecutionContext), `console` (log capture) and may `return` a value or an
awaitable. This module is imported both by the host and by sandbox child
processes, so it must stay importable without side effects.
"""

from __future__ import annotations

import ast
import asyncio
import builtins
import inspect
import json
from multiprocessing.connection import Connection
from typing import Any, TypedDict

from agentflow.models.execution import ExecutionContext

FRAGMENT_NAME = "__agentflow_node__"


class FragmentOutcome(TypedDict, total=False):
    success: bool
    result: Any
    error: str | None
    logs: list[str]


class Console:
    """Collects log lines in call order, prefixed by severity."""

    def __init__(self) -> None:
        self.lines: list[str] = []

    def log(self, *args: Any) -> None:
        self.lines.append(" ".join(_format_log_arg(a) for a in args))

    def warn(self, *args: Any) -> None:
        self.lines.append("[WARN] " + " ".join(str(a) for a in args))

    warning = warn

    def error(self, *args: Any) -> None:
        self.lines.append("[ERROR] " + " ".join(str(a) for a in args))

    def info(self, *args: Any) -> None:
        self.lines.append("[INFO] " + " ".join(str(a) for a in args))

    def print(self, *args: Any, sep: str | None = " ", **_: Any) -> None:
        self.lines.append((" " if sep is None else sep).join(_format_log_arg(a) for a in args))


def _format_log_arg(value: Any) -> str:
    if isinstance(value, (dict, list, tuple)):
        try:
            return json.dumps(value, default=str)
        except (TypeError, ValueError):
            return str(value)
    return str(value)


def compile_fragment(code: str):
    """
    Compile a fragment into an async function `(context, console, print)`.

    The fragment is parsed on its own and grafted into the function body, so
    string literals and line numbers are preserved exactly.
    """
    body = ast.parse(code, filename="<node>", mode="exec").body
    module = ast.parse(f"async def {FRAGMENT_NAME}(context, console, print):\n    pass\n")
    module.body[0].body = body or [ast.Pass()]
    ast.fix_missing_locations(module)

    namespace: dict[str, Any] = {"__name__": FRAGMENT_NAME, "__builtins__": builtins}
    exec(compile(module, "<node>", "exec"), namespace)
    return namespace[FRAGMENT_NAME]


async def run_fragment(code: str, context: ExecutionContext | dict[str, Any]) -> FragmentOutcome:
    """Run a fragment to settlement and report success, value, error and logs."""
    if not isinstance(context, ExecutionContext):
        context = ExecutionContext.model_validate(context)
    console = Console()

    try:
        fn = compile_fragment(code)
        result = await fn(context, console, console.print)
        if inspect.isawaitable(result):
            result = await result
    except asyncio.CancelledError:
        raise
    except (Exception, SystemExit) as exc:
        return {
            "success": False,
            "result": None,
            "error": f"{type(exc).__name__}: {exc}",
            "logs": console.lines,
        }

    return {"success": True, "result": result, "error": None, "logs": console.lines}


def sandbox_main(conn: Connection) -> None:
    """Entry point of a sandbox child process: one request in, one outcome out."""
    try:
        request = conn.recv()
    except EOFError:
        conn.close()
        return

    outcome = asyncio.run(run_fragment(request["code"], request["context"]))
    try:
        conn.send(outcome)
    except Exception as exc:
        conn.send({
            "success": False,
            "result": None,
            "error": f"Result could not be returned from sandbox: {type(exc).__name__}: {exc}",
            "logs": outcome.get("logs", []),
        })
    finally:
        conn.close()
