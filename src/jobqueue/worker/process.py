"""Child process handle used by the runner to supervise a job."""

import asyncio
import codecs
import logging
import os
from time import monotonic
from typing import Sequence

import psutil

from jobqueue.errors import InfrastructureError

logger = logging.getLogger(__name__)


class _OutputBuffer:
    """Accumulates a pipe and hands out only the text not yet consumed."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._chunks: list[str] = []

    def feed(self, data: bytes) -> None:
        self._chunks.append(self._decoder.decode(data))

    def close(self) -> None:
        self._chunks.append(self._decoder.decode(b"", final=True))

    def take(self) -> str:
        text = "".join(self._chunks)
        self._chunks.clear()
        return text


class JobProcess:
    """A running job command with incremental output and resource sampling."""

    def __init__(self, process: asyncio.subprocess.Process, argv: Sequence[str]):
        self._process = process
        self.argv = list(argv)
        self._started = monotonic()
        self._ended: float | None = None

        self._stdout = _OutputBuffer()
        self._stderr = _OutputBuffer()
        self._readers = [
            asyncio.create_task(self._drain(process.stdout, self._stdout)),
            asyncio.create_task(self._drain(process.stderr, self._stderr)),
        ]

        self.peak_memory = 0
        self.peak_memory_real = 0
        try:
            self._ps: psutil.Process | None = psutil.Process(process.pid)
        except psutil.Error:
            self._ps = None
        self.sample_memory()

    @classmethod
    async def spawn(
        cls,
        argv: Sequence[str],
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> "JobProcess":
        """Start a command with piped output."""
        if not argv:
            raise InfrastructureError("Cannot start a job without a command.")
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env={**os.environ, **env} if env else None,
            )
        except OSError as e:
            raise InfrastructureError(f"Could not start {argv[0]!r}: {e}") from e
        return cls(process, argv)

    @staticmethod
    async def _drain(stream: asyncio.StreamReader | None, buffer: _OutputBuffer) -> None:
        if stream is None:
            return
        while True:
            data = await stream.read(4096)
            if not data:
                break
            buffer.feed(data)
        buffer.close()

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def exit_code(self) -> int | None:
        return self._process.returncode

    @property
    def wall_clock_time(self) -> float:
        """Seconds since the process was started, frozen once it exits."""
        return (self._ended or monotonic()) - self._started

    def is_alive(self) -> bool:
        if self._process.returncode is not None:
            if self._ended is None:
                self._ended = monotonic()
            return False
        self.sample_memory()
        return True

    def sample_memory(self) -> None:
        """Track the peak memory of the process."""
        if self._ps is None:
            return
        try:
            info = self._ps.memory_info()
        except psutil.Error:
            # Exited or reaped between polls
            return
        self.peak_memory = max(self.peak_memory, info.rss)
        self.peak_memory_real = max(self.peak_memory_real, info.vms)

    def read_output(self) -> str:
        """Stdout produced since the previous call."""
        return self._stdout.take()

    def read_error_output(self) -> str:
        """Stderr produced since the previous call."""
        return self._stderr.take()

    async def wait(self) -> int:
        """Wait for the process to exit and its pipes to drain."""
        exit_code = await self._process.wait()
        if self._ended is None:
            self._ended = monotonic()
        await asyncio.gather(*self._readers)
        return exit_code

    async def terminate(self, grace_seconds: float = 5.0) -> int:
        """Ask the process to stop, killing it after the grace period."""
        if self._process.returncode is None:
            try:
                self._process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(self._process.wait(), timeout=grace_seconds)
            except TimeoutError:
                logger.warning("Process %d ignored SIGTERM, killing it", self.pid)
                try:
                    self._process.kill()
                except ProcessLookupError:
                    pass
        return await self.wait()
