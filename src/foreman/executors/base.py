from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_TASK_TIMEOUT_SECONDS = 900.0
TIMEOUT_EXIT_CODE = 124
KILL_GRACE_SECONDS = 2.0
DEFAULT_PERMITTED_OPERATIONS = ["Bash", "Read", "Write", "Edit", "Glob", "Grep"]


@dataclass(slots=True)
class ExecuteOptions:
    cwd: Path
    timeout_seconds: float = DEFAULT_TASK_TIMEOUT_SECONDS
    model: str | None = None
    permission_mode: str | None = "acceptEdits"
    permitted_operations: list[str] = field(
        default_factory=lambda: list(DEFAULT_PERMITTED_OPERATIONS)
    )
    on_output: Callable[[str], None] | None = None


@dataclass(slots=True)
class ExecuteResult:
    success: bool
    exit_code: int
    output: str
    duration_ms: int = 0


class Executor(ABC):
    name = "executor"

    @abstractmethod
    async def execute(self, prompt: str, options: ExecuteOptions) -> ExecuteResult:
        """Perform the work described by ``prompt`` inside ``options.cwd``."""


class SubprocessExecutor(Executor):
    """Runs an agent CLI as a child process and collects its combined output."""

    prompt_via_stdin = True

    def __init__(self, binary: str) -> None:
        self.binary = binary

    @abstractmethod
    def build_command(self, prompt: str, options: ExecuteOptions) -> list[str]:
        """Full argv for one invocation."""

    @staticmethod
    async def _terminate(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            os.killpg(process.pid, signal.SIGTERM)
        except OSError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=KILL_GRACE_SECONDS)
        except TimeoutError:
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except OSError:
                return
            await process.wait()

    async def execute(self, prompt: str, options: ExecuteOptions) -> ExecuteResult:
        start = time.monotonic()
        command = self.build_command(prompt, options)
        chunks: list[str] = []

        def _elapsed_ms() -> int:
            return int((time.monotonic() - start) * 1000)

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(options.cwd),
                stdin=asyncio.subprocess.PIPE if self.prompt_via_stdin else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            logger.error("%s executor could not start %s: %s", self.name, self.binary, exc)
            return ExecuteResult(
                success=False,
                exit_code=1,
                output=f"\n[SPAWN ERROR] {exc}\n",
                duration_ms=_elapsed_ms(),
            )

        def _record(text: str) -> None:
            if not text:
                return
            chunks.append(text)
            if options.on_output is not None:
                options.on_output(text)

        async def _pump(stream: asyncio.StreamReader | None) -> None:
            if stream is None:
                return
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            while True:
                data = await stream.read(4096)
                if not data:
                    _record(decoder.decode(b"", final=True))
                    return
                _record(decoder.decode(data))

        async def _feed() -> None:
            if not self.prompt_via_stdin or process.stdin is None:
                return
            try:
                process.stdin.write(prompt.encode("utf-8"))
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                logger.debug("%s closed stdin before reading the prompt", self.binary)
            finally:
                process.stdin.close()

        async def _feed_and_wait() -> int:
            await asyncio.gather(_feed(), _pump(process.stdout), _pump(process.stderr))
            return await process.wait()

        try:
            exit_code = await asyncio.wait_for(_feed_and_wait(), timeout=options.timeout_seconds)
        except TimeoutError:
            await self._terminate(process)
            _record("\n[TIMEOUT] Task exceeded time limit\n")
            logger.warning("%s executor timed out after %ss", self.name, options.timeout_seconds)
            return ExecuteResult(
                success=False,
                exit_code=TIMEOUT_EXIT_CODE,
                output="".join(chunks),
                duration_ms=_elapsed_ms(),
            )
        except asyncio.CancelledError:
            await self._terminate(process)
            raise

        return ExecuteResult(
            success=exit_code == 0,
            exit_code=exit_code,
            output="".join(chunks),
            duration_ms=_elapsed_ms(),
        )
