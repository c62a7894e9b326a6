"""Sandbox executor -- runs untrusted JavaScript in a fresh V8 isolate.

Each invocation gets its own child process holding a single isolate
(mini-racer): plain V8 with no Node runtime, so there is no filesystem,
process, network or environment access to deny in the first place. The
wall-clock timeout and the heap ceiling are enforced by V8 itself. A console
shim captures output. The child is killed and reaped on every exit path,
including cancellation of the awaiting request.

run() never raises. Every failure mode is encoded in the ExecutionResult.
"""

from __future__ import annotations

import asyncio
import json
import logging
import multiprocessing
import re
import time
from multiprocessing.connection import Connection

from prometheus_client import Counter, Histogram
from py_mini_racer import (
    JSEvalException,
    JSOOMException,
    JSParseException,
    JSTimeoutException,
    MiniRacer,
)

from .errors import SandboxError, SandboxResourceExceeded, SandboxRuntimeError, SandboxTimeout
from .state import ErrorKind, ExecutionResult

logger = logging.getLogger("fixloop.sandbox")

SANDBOX_EXECUTIONS = Counter(
    "fixloop_sandbox_executions_total",
    "Total sandbox executions by outcome",
    ["outcome"],
)
SANDBOX_DURATION = Histogram(
    "fixloop_sandbox_duration_seconds",
    "Sandbox execution latency",
    buckets=[0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10],
)

_CONSOLE_SHIM = """
(function () {
  const out = [];
  const err = [];
  const limit = %(limit)d;
  let size = 0;
  let truncated = false;
  const render = (args) => args.map((arg) => {
    if (typeof arg === 'object' && arg !== null) {
      try { return JSON.stringify(arg); } catch (e) { return String(arg); }
    }
    return String(arg);
  }).join(' ');
  const push = (buf) => (...args) => {
    const line = render(args);
    size += line.length + 1;
    if (size <= limit) {
      buf.push(line);
    } else if (!truncated) {
      truncated = true;
      err.push('[output truncated]');
    }
  };
  globalThis.console = {
    log: push(out), info: push(out), debug: push(out),
    warn: push(err), error: push(err),
  };
  globalThis.__fixloopOutput = () => JSON.stringify({ stdout: out.join('\\n'), stderr: err.join('\\n') });
})();
"""

_OUTPUT_READ_TIMEOUT_MS = 1000

# Child start-up (interpreter + imports) on top of the V8 timeout before the
# parent gives up on a silent child.
_CHILD_GRACE_SECONDS = 10.0

_JS_ERROR = re.compile(r"\b([A-Z][A-Za-z]*Error\b(?::[^\n]*)?)")
_V8_LOCATION = re.compile(r"^<anonymous>:\d+:\s*")


def clean_js_error(raw: str) -> str:
    """Reduce V8 exception text to one line, e.g. 'RangeError: Maximum call stack size exceeded'."""
    match = _JS_ERROR.search(raw or "")
    if match:
        return match.group(1).strip()[:300]
    for line in (raw or "").splitlines():
        line = _V8_LOCATION.sub("", line.strip())
        if line:
            return line[:300]
    return "Unknown execution error"


def sandbox_error(result: ExecutionResult) -> SandboxError | None:
    """Map a failed result onto the error taxonomy. None if the run succeeded."""
    if result.ok:
        return None
    if result.error_kind == ErrorKind.TIMEOUT:
        return SandboxTimeout(result.reason)
    if result.error_kind == ErrorKind.MEMORY:
        return SandboxResourceExceeded(result.reason)
    return SandboxRuntimeError(result.reason)


def console_shim(max_output_bytes: int) -> str:
    return _CONSOLE_SHIM % {"limit": max_output_bytes}


def _read_output(ctx: MiniRacer) -> tuple[str, str]:
    captured = json.loads(ctx.eval("__fixloopOutput()", timeout=_OUTPUT_READ_TIMEOUT_MS))
    return captured.get("stdout", ""), captured.get("stderr", "")


def _failed(
    ctx: MiniRacer,
    start: float,
    kind: ErrorKind,
    message: str,
    timed_out: bool = False,
) -> ExecutionResult:
    # Partial output is best-effort: a terminated isolate may refuse further evals
    try:
        stdout, stderr = _read_output(ctx)
    except Exception as e:
        logger.debug("sandbox_partial_output_unavailable", extra={"error_kind": kind.value, "error": str(e)[:120]})
        stdout, stderr = "", ""
    stderr = f"{stderr}\n{message}" if stderr else message
    return ExecutionResult(
        ok=False,
        stdout=stdout,
        stderr=stderr,
        error_kind=kind,
        error_message=message,
        timed_out=timed_out,
        duration_ms=int((time.monotonic() - start) * 1000),
    )


def run_in_isolate(code: str, shim: str, timeout_ms: int, memory_limit_mb: int) -> ExecutionResult:
    """Blocking: create one isolate, run ``code``, tear it down.

    Must be the only isolate in its process; SandboxExecutor calls it in a
    dedicated child.
    """
    start = time.monotonic()
    ctx = MiniRacer()
    try:
        ctx.eval(shim, timeout=timeout_ms)
        try:
            ctx.eval(
                f"{code}\n;void 0;",
                timeout=timeout_ms,
                max_memory=memory_limit_mb * 1024 * 1024,
            )
        except JSTimeoutException:
            return _failed(ctx, start, ErrorKind.TIMEOUT, f"Execution timed out after {timeout_ms}ms", timed_out=True)
        except JSOOMException:
            return _failed(ctx, start, ErrorKind.MEMORY, f"Execution exceeded the {memory_limit_mb}MB memory limit")
        except JSParseException as e:
            return _failed(ctx, start, ErrorKind.SYNTAX, clean_js_error(str(e)))
        except JSEvalException as e:
            return _failed(ctx, start, ErrorKind.RUNTIME, clean_js_error(str(e)))

        stdout, stderr = _read_output(ctx)
        return ExecutionResult(
            ok=True,
            stdout=stdout,
            stderr=stderr,
            duration_ms=int((time.monotonic() - start) * 1000),
        )
    finally:
        ctx.close()


def _child_main(conn: Connection, code: str, shim: str, timeout_ms: int, memory_limit_mb: int) -> None:
    """Child process entrypoint. Sends exactly one ExecutionResult, or nothing if it dies."""
    try:
        conn.send(run_in_isolate(code, shim, timeout_ms, memory_limit_mb))
    finally:
        conn.close()


class SandboxExecutor:
    """Runs one program per call, each in its own child process.

    No state is shared between invocations. At most ``max_concurrency``
    children are alive at once; a slot is released only after its child has
    exited.
    """

    def __init__(
        self,
        timeout_ms: int = 5000,
        memory_limit_mb: int = 16,
        max_output_bytes: int = 100 * 1024,
        max_concurrency: int = 4,
    ):
        self.timeout_ms = timeout_ms
        self.memory_limit_mb = memory_limit_mb
        self.max_output_bytes = max_output_bytes
        self._shim = console_shim(max_output_bytes)
        self._slots = asyncio.Semaphore(max_concurrency)
        self._mp = multiprocessing.get_context("spawn")

    @classmethod
    def from_settings(cls, settings) -> SandboxExecutor:
        return cls(
            timeout_ms=settings.sandbox_timeout_ms,
            memory_limit_mb=settings.sandbox_memory_limit_mb,
            max_output_bytes=settings.sandbox_max_output_bytes,
            max_concurrency=settings.sandbox_max_concurrency,
        )

    async def run(self, code: str) -> ExecutionResult:
        if not code or not code.strip():
            return ExecutionResult(ok=False, error_kind=ErrorKind.EMPTY, error_message="Code cannot be empty")

        start = time.monotonic()
        try:
            async with self._slots:
                result = await self._run_child(code)
        except Exception:
            logger.exception("sandbox_host_error")
            result = ExecutionResult(
                ok=False,
                error_kind=ErrorKind.INTERNAL,
                error_message="Sandbox failed to execute the code",
                duration_ms=int((time.monotonic() - start) * 1000),
            )

        outcome = "success" if result.ok else (result.error_kind.value if result.error_kind else "failure")
        SANDBOX_EXECUTIONS.labels(outcome=outcome).inc()
        SANDBOX_DURATION.observe(time.monotonic() - start)
        logger.info(
            "sandbox_completed",
            extra={"ok": result.ok, "error_kind": outcome, "duration_ms": result.duration_ms},
        )
        return result

    def _start(self, code: str) -> tuple[multiprocessing.process.BaseProcess, Connection]:
        receiver, sender = self._mp.Pipe(duplex=False)
        proc = self._mp.Process(
            target=_child_main,
            args=(sender, code, self._shim, self.timeout_ms, self.memory_limit_mb),
            daemon=True,
        )
        proc.start()
        sender.close()
        return proc, receiver

    async def _run_child(self, code: str) -> ExecutionResult:
        start = time.monotonic()
        proc, receiver = self._start(code)
        try:
            return await asyncio.to_thread(self._collect, receiver, start)
        finally:
            # Also reached on cancellation: the isolate dies with its process
            killed = proc.is_alive()
            if killed:
                proc.kill()
            proc.join()
            if not killed and proc.exitcode:
                logger.warning("sandbox_child_exit", extra={"exitcode": proc.exitcode})

    def _collect(self, receiver: Connection, start: float) -> ExecutionResult:
        """Blocking: wait for the child's single result. Called in a worker thread."""
        with receiver:
            if not receiver.poll(self.timeout_ms / 1000 + _CHILD_GRACE_SECONDS):
                return ExecutionResult(
                    ok=False,
                    stderr=f"Execution timed out after {self.timeout_ms}ms",
                    error_kind=ErrorKind.TIMEOUT,
                    error_message=f"Execution timed out after {self.timeout_ms}ms",
                    timed_out=True,
                    duration_ms=int((time.monotonic() - start) * 1000),
                )
            try:
                return receiver.recv()
            except EOFError as e:
                raise SandboxError("Sandbox process exited without a result") from e
