"""
Subprocess Executor
===================

Runs a shell command with a hard wall-clock limit and an output ceiling.

Both streams are drained incrementally so a runaway command is killed as
soon as it crosses max_output_bytes instead of after it has filled memory.
"""

import asyncio
import logging
import os
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from execguard.errors import OutputOverflow, SubprocessError, SubprocessTimeout


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 120.0
DEFAULT_MAX_OUTPUT_BYTES = 10 * 1024 * 1024
READ_CHUNK_SIZE = 64 * 1024

DEFAULT_SUCCESS_OUTPUT = "Command completed successfully"


@dataclass
class ExecutionOutput:
    """Captured result of a finished command."""
    stdout: str
    stderr: str
    exit_code: int
    duration_ms: int

    @property
    def text(self) -> str:
        """stdout, else stderr, else a default message."""
        if self.stdout:
            return self.stdout
        if self.stderr:
            return self.stderr
        return DEFAULT_SUCCESS_OUTPUT


class _OutputBudget:
    def __init__(self, max_bytes: int):
        self.max_bytes = max_bytes
        self.used = 0

    def consume(self, n: int) -> bool:
        self.used += n
        return self.used <= self.max_bytes


class SubprocessExecutor:
    """Spawns commands through the system shell."""

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
    ):
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if max_output_bytes <= 0:
            raise ValueError("max_output_bytes must be positive")
        self.timeout_seconds = timeout_seconds
        self.max_output_bytes = max_output_bytes

    async def run(
        self,
        command: str,
        working_directory: Optional[Union[str, Path]] = None,
    ) -> ExecutionOutput:
        """
        Run a command to completion.

        Raises:
            SubprocessTimeout: The command exceeded timeout_seconds
            OutputOverflow: stdout + stderr exceeded max_output_bytes
            SubprocessError: Non-zero exit, or the command could not start
        """
        logger.debug("Running command: %s (cwd=%s)", command, working_directory)
        start = time.monotonic()
        try:
            process = await asyncio.create_subprocess_shell(
                command,
                cwd=str(working_directory) if working_directory else None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=os.name != "nt",
            )
        except OSError as e:
            raise SubprocessError(f"Failed to start command: {e}") from e

        budget = _OutputBudget(self.max_output_bytes)
        stdout_buf = bytearray()
        stderr_buf = bytearray()

        async def drain(stream: asyncio.StreamReader, buf: bytearray) -> None:
            while True:
                chunk = await stream.read(READ_CHUNK_SIZE)
                if not chunk:
                    return
                if not budget.consume(len(chunk)):
                    raise OutputOverflow(command, self.max_output_bytes)
                buf.extend(chunk)

        async def communicate() -> int:
            await asyncio.gather(
                drain(process.stdout, stdout_buf),
                drain(process.stderr, stderr_buf),
            )
            return await process.wait()

        try:
            exit_code = await asyncio.wait_for(communicate(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            await self._kill(process)
            raise SubprocessTimeout(command, self.timeout_seconds) from None
        except OutputOverflow:
            await self._kill(process)
            raise

        duration_ms = int((time.monotonic() - start) * 1000)
        stdout = stdout_buf.decode("utf-8", errors="replace")
        stderr = stderr_buf.decode("utf-8", errors="replace")

        if exit_code != 0:
            message = f"Command failed: {command}"
            if stderr.strip():
                message += f"\n{stderr.strip()}"
            raise SubprocessError(message, exit_code=exit_code, stdout=stdout, stderr=stderr)

        return ExecutionOutput(stdout=stdout, stderr=stderr, exit_code=exit_code, duration_ms=duration_ms)

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        """Kill the shell and everything it started."""
        if os.name != "nt":
            # The shell leads its own process group, so background children die too
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except (ProcessLookupError, PermissionError):
                pass
        elif process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        await process.wait()
