"""
Sandboxed execution of node logic fragments.

Two sandboxes implement the same contract:
- ProcessSandbox runs each fragment in a fresh child process and talks to it
  only through a pipe. A hung or crashing fragment cannot block or take down
  the host; on timeout the child is terminated.
- InProcessSandbox runs the fragment on the host event loop. Same context and
  log shape, but a fragment that never yields cannot be interrupted.

NodeExecutor sits in front of them: it short-circuits blank code, measures
duration, and falls back to the in-process sandbox when a child process
cannot be created.
"""

from __future__ import annotations

import abc
import ast
import asyncio
import logging
import multiprocessing
import sys
import time

from agentflow.config import SandboxMode, get_settings
from agentflow.errors import SandboxUnavailableError
from agentflow.models.execution import ExecutionContext, NodeResult
from agentflow.services.fragment_runtime import FragmentOutcome, run_fragment, sandbox_main

logger = logging.getLogger(__name__)

SKIPPED_LOG = "No code to execute — skipped"

_TERMINATE_GRACE_S = 1.0
_POLL_INTERVAL_S = 0.1


def timeout_message(timeout_ms: int) -> str:
    return f"Execution timed out after {timeout_ms / 1000:g}s"


def _timeout_outcome(timeout_ms: int) -> FragmentOutcome:
    # Logs stay on the far side of the isolation boundary.
    return {"success": False, "result": None, "error": timeout_message(timeout_ms), "logs": []}


# ---------------------------------------------------------------------------
# Sandboxes
# ---------------------------------------------------------------------------


class Sandbox(abc.ABC):
    isolated: bool = False

    @abc.abstractmethod
    async def execute(
        self, code: str, context: ExecutionContext, timeout_ms: int
    ) -> FragmentOutcome:
        """Run `code` against `context` and settle within `timeout_ms`."""


class InProcessSandbox(Sandbox):
    isolated = False

    async def execute(
        self, code: str, context: ExecutionContext, timeout_ms: int
    ) -> FragmentOutcome:
        # Deferred tick: let the caller's pending callbacks run first
        await asyncio.sleep(0)
        # Upstream results are shared objects; the fragment gets its own copy
        context = context.model_copy(deep=True)
        try:
            return await asyncio.wait_for(run_fragment(code, context), timeout_ms / 1000)
        except asyncio.TimeoutError:
            return _timeout_outcome(timeout_ms)


class ProcessSandbox(Sandbox):
    isolated = True

    def __init__(self, start_method: str = "spawn"):
        self._mp = multiprocessing.get_context(start_method)

    async def execute(
        self, code: str, context: ExecutionContext, timeout_ms: int
    ) -> FragmentOutcome:
        try:
            parent_conn, child_conn = self._mp.Pipe(duplex=True)
        except OSError as exc:
            raise SandboxUnavailableError(f"Could not open sandbox pipe: {exc}") from exc

        process = self._mp.Process(
            target=sandbox_main,
            args=(child_conn,),
            name=f"agentflow-node-{context.node_id}",
            daemon=True,
        )
        try:
            process.start()
        except (OSError, RuntimeError, ValueError) as exc:
            parent_conn.close()
            child_conn.close()
            raise SandboxUnavailableError(f"Could not start sandbox process: {exc}") from exc

        # The child owns its end now
        child_conn.close()

        try:
            try:
                await asyncio.to_thread(
                    parent_conn.send, {"code": code, "context": context.model_dump()}
                )
            except (OSError, ValueError, TypeError) as exc:
                return {
                    "success": False,
                    "result": None,
                    "error": f"Failed to send code to sandbox: {exc}",
                    "logs": [],
                }

            ready = await _wait_readable(parent_conn, timeout_ms / 1000)
            if not ready:
                logger.warning(
                    "Node %s timed out after %d ms; terminating sandbox", context.node_id, timeout_ms
                )
                return _timeout_outcome(timeout_ms)

            try:
                return parent_conn.recv()
            except EOFError:
                process.join(_TERMINATE_GRACE_S)
                return {
                    "success": False,
                    "result": None,
                    "error": f"Sandbox process exited unexpectedly (exit code {process.exitcode})",
                    "logs": [],
                }
        finally:
            _teardown(process)
            parent_conn.close()


async def _wait_readable(conn, timeout_s: float) -> bool:
    """
    Wait until `conn` has data (or EOF), polling in short slices.

    If the caller is cancelled, the poll in flight is allowed to return
    before the cancellation propagates, so the pipe is never closed under a
    polling thread.
    """
    deadline = time.monotonic() + timeout_s
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        poll = asyncio.ensure_future(
            asyncio.to_thread(conn.poll, min(_POLL_INTERVAL_S, remaining))
        )
        try:
            ready = await asyncio.shield(poll)
        except asyncio.CancelledError:
            await asyncio.wait([poll])
            raise
        if ready:
            return True


def _teardown(process) -> None:
    if process.is_alive():
        process.terminate()
        process.join(_TERMINATE_GRACE_S)
        if process.is_alive():
            process.kill()
            process.join(_TERMINATE_GRACE_S)
    else:
        process.join(_TERMINATE_GRACE_S)


def create_sandbox(mode: SandboxMode | None = None, *, start_method: str | None = None) -> Sandbox:
    """Build the sandbox selected by configuration (or by the explicit arguments)."""
    settings = get_settings()
    mode = mode or settings.sandbox_mode
    if mode == "inprocess":
        return InProcessSandbox()
    if mode == "process":
        return ProcessSandbox(start_method or settings.sandbox_start_method)
    raise ValueError(f"Unknown sandbox mode '{mode}'")


# ---------------------------------------------------------------------------
# Package detection
# ---------------------------------------------------------------------------


def detect_packages(code: str) -> list[str]:
    """Top-level third-party modules imported by a fragment (stdlib excluded)."""
    try:
        tree = ast.parse(code)
    except SyntaxError:
        return []

    stdlib = set(sys.stdlib_module_names) | set(sys.builtin_module_names)
    packages: set[str] = set()
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            names = [alias.name for alias in node.names]
        elif isinstance(node, ast.ImportFrom) and node.level == 0 and node.module:
            names = [node.module]
        else:
            continue
        for name in names:
            top = name.split(".")[0]
            if top and top not in stdlib:
                packages.add(top)
    return sorted(packages)


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class NodeExecutor:
    """Runs one node's code and turns the sandbox outcome into a NodeResult."""

    def __init__(
        self,
        sandbox: Sandbox | None = None,
        *,
        fallback: Sandbox | None = None,
        timeout_ms: int | None = None,
    ):
        self.sandbox = sandbox or create_sandbox()
        self.fallback = fallback or InProcessSandbox()
        self.timeout_ms = timeout_ms or get_settings().node_timeout_ms

    async def execute(
        self,
        code: str | None,
        context: ExecutionContext,
        timeout_ms: int | None = None,
    ) -> NodeResult:
        identity = {
            "node_id": context.node_id,
            "node_name": context.node_name,
            "category": context.category,
        }

        if not code or not code.strip():
            return NodeResult(**identity, success=True, logs=[SKIPPED_LOG], duration_ms=0)

        timeout_ms = timeout_ms or self.timeout_ms
        packages = detect_packages(code)
        start = time.perf_counter()

        try:
            outcome = await self.sandbox.execute(code, context, timeout_ms)
        except SandboxUnavailableError as exc:
            logger.warning(
                "Isolation unavailable for node %s (%s); running in-process", context.node_id, exc
            )
            outcome = await self.fallback.execute(code, context, timeout_ms)

        elapsed_ms = int((time.perf_counter() - start) * 1000)
        return NodeResult(
            **identity,
            success=bool(outcome.get("success")),
            result=outcome.get("result"),
            error=outcome.get("error"),
            logs=list(outcome.get("logs") or []),
            duration_ms=elapsed_ms,
            detected_packages=packages or None,
        )
