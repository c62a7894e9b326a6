"""Tests for the V8 sandbox executor.

Most tests run real isolates through mini-racer, each in its own child
process. The host-failure paths and one isolate unit test patch mini-racer so
they stay deterministic.
"""

from __future__ import annotations

import asyncio
import multiprocessing
import time
from unittest.mock import MagicMock, patch

import pytest
from fixloop.errors import SandboxError, SandboxResourceExceeded, SandboxRuntimeError, SandboxTimeout
from fixloop.sandbox import SandboxExecutor, clean_js_error, console_shim, run_in_isolate, sandbox_error
from fixloop.state import ErrorKind, ExecutionResult
from py_mini_racer import JSOOMException

BUGGY_FACTORIAL = "function f(n){ if (n = 0) return 1; return n*f(n-1); }\nconsole.log(f(5));"
FIXED_FACTORIAL = "function f(n){ if (n === 0) return 1; return n*f(n-1); }\nconsole.log(f(5));"


@pytest.fixture
def sandbox():
    return SandboxExecutor(timeout_ms=1000)


class TestExecution:
    @pytest.mark.asyncio
    async def test_console_log(self, sandbox):
        result = await sandbox.run("console.log(5)")
        assert result.ok is True
        assert result.stdout == "5"
        assert result.error_kind is None

    @pytest.mark.asyncio
    async def test_multiple_lines_and_objects(self, sandbox):
        result = await sandbox.run("console.log('a', 1); console.info({x: [1, 2]}); console.log(null)")
        assert result.ok
        assert result.stdout == 'a 1\n{"x":[1,2]}\nnull'

    @pytest.mark.asyncio
    async def test_warn_and_error_go_to_stderr(self, sandbox):
        result = await sandbox.run("console.warn('careful'); console.error('bad'); console.log('ok')")
        assert result.ok
        assert result.stdout == "ok"
        assert result.stderr == "careful\nbad"

    @pytest.mark.asyncio
    async def test_empty_code(self, sandbox):
        result = await sandbox.run("   ")
        assert result.ok is False
        assert result.error_kind == ErrorKind.EMPTY

    @pytest.mark.asyncio
    async def test_output_cap(self):
        sandbox = SandboxExecutor(timeout_ms=1000, max_output_bytes=20)
        result = await sandbox.run("for (let i = 0; i < 100; i++) console.log('line ' + i)")
        assert result.ok
        assert len(result.stdout) <= 20
        assert "[output truncated]" in result.stderr


class TestFailures:
    @pytest.mark.asyncio
    async def test_infinite_loop_times_out(self):
        sandbox = SandboxExecutor(timeout_ms=500)
        start = time.monotonic()
        result = await sandbox.run("while (true) {}")
        elapsed = time.monotonic() - start
        assert result.ok is False
        assert result.timed_out is True
        assert result.error_kind == ErrorKind.TIMEOUT
        assert result.reason == "Execution timed out"
        assert elapsed < 0.5 + 5.0

    @pytest.mark.asyncio
    async def test_output_before_timeout_survives(self):
        sandbox = SandboxExecutor(timeout_ms=500)
        result = await sandbox.run("console.log('a'); while (true) {}")
        assert result.timed_out is True
        assert result.error_kind == ErrorKind.TIMEOUT
        assert result.stdout == "a"

    @pytest.mark.asyncio
    async def test_syntax_error(self, sandbox):
        result = await sandbox.run("function (")
        assert result.ok is False
        assert result.error_kind == ErrorKind.SYNTAX
        assert result.error_message
        assert "\n" not in result.error_message

    @pytest.mark.asyncio
    async def test_thrown_error(self, sandbox):
        result = await sandbox.run("console.log('before'); null.x;")
        assert result.ok is False
        assert result.error_kind == ErrorKind.RUNTIME
        assert result.error_message.startswith("TypeError")
        assert result.stdout == "before"
        assert result.error_message in result.stderr

    @pytest.mark.asyncio
    async def test_no_node_apis(self, sandbox):
        result = await sandbox.run("require('fs')")
        assert result.ok is False
        assert "ReferenceError" in result.error_message

        result = await sandbox.run("console.log(typeof process, typeof fetch)")
        assert result.ok
        assert result.stdout == "undefined undefined"

    @pytest.mark.asyncio
    async def test_memory_ceiling(self):
        sandbox = SandboxExecutor(timeout_ms=5000, memory_limit_mb=16)
        result = await sandbox.run("const a = []; while (true) a.push(new Array(1e6).fill(1));")
        assert result.ok is False
        assert result.error_kind == ErrorKind.MEMORY
        assert result.timed_out is False
        assert "16MB" in result.error_message

    def test_memory_ceiling_keeps_partial_output(self):
        ctx = MagicMock()
        ctx.eval.side_effect = [None, JSOOMException("heap limit"), '{"stdout": "partial", "stderr": ""}']
        with patch("fixloop.sandbox.MiniRacer", return_value=ctx):
            result = run_in_isolate("const a = [];", console_shim(1024), timeout_ms=1000, memory_limit_mb=16)
        assert result.error_kind == ErrorKind.MEMORY
        assert result.stdout == "partial"
        ctx.close.assert_called_once()

    def test_unreadable_output_after_failure(self):
        ctx = MagicMock()
        ctx.eval.side_effect = [None, JSOOMException("heap limit"), RuntimeError("isolate disposed")]
        with patch("fixloop.sandbox.MiniRacer", return_value=ctx):
            result = run_in_isolate("const a = [];", console_shim(1024), timeout_ms=1000, memory_limit_mb=16)
        assert result.error_kind == ErrorKind.MEMORY
        assert result.stdout == ""
        assert result.stderr == result.error_message

    @pytest.mark.asyncio
    async def test_host_failure_is_an_internal_result(self, sandbox):
        with patch.object(SandboxExecutor, "_start", side_effect=OSError("v8 gone")):
            result = await sandbox.run("console.log(1)")
        assert result.ok is False
        assert result.error_kind == ErrorKind.INTERNAL
        assert "v8 gone" not in result.reason


class TestIsolation:
    @pytest.mark.asyncio
    async def test_no_state_between_invocations(self, sandbox):
        code = "globalThis.counter = (globalThis.counter || 0) + 1; console.log(globalThis.counter)"
        results = await asyncio.gather(*(sandbox.run(code) for _ in range(3)))
        assert [r.stdout for r in results] == ["1", "1", "1"]
        assert (await sandbox.run(code)).stdout == "1"

    @pytest.mark.asyncio
    async def test_concurrent_runs_do_not_interfere(self):
        sandbox = SandboxExecutor(timeout_ms=2000, max_concurrency=4)
        programs = [f"const v = {i}; console.log(v * 10)" for i in range(4)] + ["null.x;", "while (true) {}"]
        results = await asyncio.gather(*(sandbox.run(code) for code in programs))

        assert [r.stdout for r in results[:4]] == ["0", "10", "20", "30"]
        assert results[4].error_kind == ErrorKind.RUNTIME
        assert results[5].timed_out is True

    @pytest.mark.asyncio
    async def test_cancelled_run_is_terminated(self):
        sandbox = SandboxExecutor(timeout_ms=30_000, max_concurrency=1)
        spinning = asyncio.create_task(sandbox.run("while (true) {}"))
        await asyncio.sleep(0.5)
        spinning.cancel()
        with pytest.raises(asyncio.CancelledError):
            await spinning
        assert multiprocessing.active_children() == []

        start = time.monotonic()
        result = await sandbox.run("console.log(2)")
        assert result.stdout == "2"
        assert time.monotonic() - start < 10

    def test_child_without_result_is_an_error(self, sandbox):
        receiver, sender = multiprocessing.Pipe(duplex=False)
        sender.close()
        with pytest.raises(SandboxError):
            sandbox._collect(receiver, time.monotonic())



class TestScenario:
    @pytest.mark.asyncio
    async def test_buggy_factorial_fails_and_fixed_prints_120(self, sandbox):
        buggy = await sandbox.run(BUGGY_FACTORIAL)
        assert buggy.ok is False
        assert "RangeError" in buggy.reason

        fixed = await sandbox.run(FIXED_FACTORIAL)
        assert fixed.ok is True
        assert "120" in fixed.stdout


class TestErrorMapping:
    def test_clean_js_error(self):
        raw = "<anonymous>:1: TypeError: Cannot read properties of null (reading 'x')\nnull.x;\n     ^\n"
        assert clean_js_error(raw) == "TypeError: Cannot read properties of null (reading 'x')"

    def test_clean_js_error_fallback(self):
        assert clean_js_error("<anonymous>:3: something odd") == "something odd"
        assert clean_js_error("") == "Unknown execution error"

    def test_sandbox_error_taxonomy(self):
        assert sandbox_error(ExecutionResult(ok=True)) is None
        timeout = ExecutionResult(ok=False, timed_out=True, error_kind=ErrorKind.TIMEOUT)
        assert isinstance(sandbox_error(timeout), SandboxTimeout)
        memory = ExecutionResult(ok=False, error_kind=ErrorKind.MEMORY, error_message="too big")
        assert isinstance(sandbox_error(memory), SandboxResourceExceeded)
        runtime = ExecutionResult(ok=False, error_kind=ErrorKind.RUNTIME, error_message="TypeError: x")
        err = sandbox_error(runtime)
        assert isinstance(err, SandboxRuntimeError)
        assert str(err) == "TypeError: x"
