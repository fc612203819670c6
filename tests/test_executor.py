"""
Tests for the Subprocess Executor
=================================

Tests for executor.py - output capture, exit codes, the wall-clock limit
and the output ceiling. Commands run through /bin/sh.
"""

import asyncio
import os
import sys
import time
from pathlib import Path

import pytest

from execguard.errors import OutputOverflow, SubprocessError, SubprocessTimeout
from execguard.executor import DEFAULT_SUCCESS_OUTPUT, ExecutionOutput, SubprocessExecutor


pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell commands")


def is_alive(pid):
    """True while pid exists and is not a zombie awaiting its reaper."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    stat = Path(f"/proc/{pid}/stat")
    if not Path("/proc").is_dir():
        return True
    try:
        state = stat.read_text().rsplit(")", 1)[1].split()[0]
    except FileNotFoundError:
        return False
    return state != "Z"


# =============================================================================
# ExecutionOutput
# =============================================================================

class TestExecutionOutput:
    """Tests for the text fallback order."""

    def test_prefers_stdout(self):
        assert ExecutionOutput("out", "err", 0, 1).text == "out"

    def test_falls_back_to_stderr(self):
        assert ExecutionOutput("", "err", 0, 1).text == "err"

    def test_default_message(self):
        assert ExecutionOutput("", "", 0, 1).text == DEFAULT_SUCCESS_OUTPUT


# =============================================================================
# SubprocessExecutor
# =============================================================================

class TestSubprocessExecutor:
    """Tests for SubprocessExecutor.run()."""

    def test_rejects_bad_limits(self):
        with pytest.raises(ValueError):
            SubprocessExecutor(timeout_seconds=0)
        with pytest.raises(ValueError):
            SubprocessExecutor(max_output_bytes=-1)

    @pytest.mark.asyncio
    async def test_captures_stdout(self):
        result = await SubprocessExecutor().run("echo hello")
        assert result.stdout == "hello\n"
        assert result.exit_code == 0
        assert result.text == "hello\n"
        assert result.duration_ms >= 0

    @pytest.mark.asyncio
    async def test_captures_stderr(self):
        result = await SubprocessExecutor().run("echo oops 1>&2")
        assert result.stdout == ""
        assert result.text == "oops\n"

    @pytest.mark.asyncio
    async def test_silent_command(self):
        result = await SubprocessExecutor().run("true")
        assert result.text == DEFAULT_SUCCESS_OUTPUT

    @pytest.mark.asyncio
    async def test_working_directory(self, temp_dir):
        result = await SubprocessExecutor().run("pwd", working_directory=temp_dir)
        assert Path(result.stdout.strip()).resolve() == temp_dir.resolve()

    @pytest.mark.asyncio
    async def test_missing_working_directory(self, temp_dir):
        with pytest.raises(SubprocessError):
            await SubprocessExecutor().run("pwd", working_directory=temp_dir / "missing")

    @pytest.mark.asyncio
    async def test_non_zero_exit(self):
        with pytest.raises(SubprocessError) as exc_info:
            await SubprocessExecutor().run("echo partial; echo broken 1>&2; exit 3")

        error = exc_info.value
        assert error.exit_code == 3
        assert error.stdout == "partial\n"
        assert error.stderr == "broken\n"
        assert "broken" in str(error)

    @pytest.mark.asyncio
    async def test_timeout_kills_command(self):
        executor = SubprocessExecutor(timeout_seconds=0.2)
        start = time.monotonic()

        with pytest.raises(SubprocessTimeout) as exc_info:
            await executor.run("exec sleep 5")

        assert time.monotonic() - start < 3
        assert exc_info.value.timeout_seconds == 0.2

    @pytest.mark.asyncio
    async def test_timeout_kills_background_children(self, temp_dir):
        pid_file = temp_dir / "child.pid"
        executor = SubprocessExecutor(timeout_seconds=0.5)

        with pytest.raises(SubprocessTimeout):
            await executor.run(f'sleep 30 & echo $! > "{pid_file}"; wait')

        child = int(pid_file.read_text().strip())
        for _ in range(40):
            if not is_alive(child):
                break
            await asyncio.sleep(0.05)
        assert not is_alive(child)

    @pytest.mark.asyncio
    async def test_output_ceiling(self):
        executor = SubprocessExecutor(max_output_bytes=100)
        command = f'"{sys.executable}" -c "print(\'x\' * 5000)"'

        with pytest.raises(OutputOverflow) as exc_info:
            await executor.run(command)

        assert exc_info.value.max_bytes == 100
