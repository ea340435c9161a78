from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from dataclasses import dataclass

from hollon.backends.base import BackendProcessError

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124


@dataclass(slots=True, frozen=True)
class ProcessOutcome:
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False

    @property
    def combined_output(self) -> str:
        return f"{self.stdout}\n{self.stderr}".strip()


async def _drain(stream: asyncio.StreamReader | None, chunks: list[bytes]) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(65536)
        if not chunk:
            return
        chunks.append(chunk)


class ProcessRunner:
    """Runs one external process per call and guarantees it is gone on return.

    Children are started in their own session so that a timeout can signal the
    whole process group, not just the direct child.
    """

    def __init__(self, *, kill_grace_seconds: float = 5.0) -> None:
        self.kill_grace_seconds = kill_grace_seconds

    def _signal(self, process: asyncio.subprocess.Process, sig: int) -> None:
        if process.returncode is not None:
            return
        try:
            if hasattr(os, "killpg"):
                os.killpg(process.pid, sig)
            else:
                process.send_signal(sig)
        except ProcessLookupError:
            pass

    @staticmethod
    def _kill_group(pid: int) -> None:
        if not hasattr(os, "killpg"):
            return
        try:
            os.killpg(pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        self._signal(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_grace_seconds)
            return
        except TimeoutError:
            logger.warning("Process %s ignored SIGTERM; sending SIGKILL", process.pid)
        self._signal(process, signal.SIGKILL)
        await process.wait()

    async def _write_input(self, process: asyncio.subprocess.Process, data: str | None) -> None:
        if process.stdin is None:
            return
        try:
            if data:
                process.stdin.write(data.encode("utf-8"))
                await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Process %s closed stdin before input was consumed", process.pid)
        finally:
            process.stdin.close()

    async def spawn(
        self,
        command: str,
        args: list[str],
        *,
        input: str | None = None,
        cwd: str | None = None,
        timeout_seconds: float,
    ) -> ProcessOutcome:
        started = time.monotonic()
        logger.debug("Spawning %s %s (cwd=%s)", command, " ".join(args), cwd or ".")
        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *args,
                cwd=cwd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            logger.error("Failed to spawn %s: %s", command, exc)
            raise BackendProcessError(
                f"Failed to spawn process '{command}': {exc}",
                backend="process",
                retriable=False,
            ) from exc

        stdout_chunks: list[bytes] = []
        stderr_chunks: list[bytes] = []
        readers = asyncio.gather(
            _drain(process.stdout, stdout_chunks),
            _drain(process.stderr, stderr_chunks),
        )
        writer = asyncio.ensure_future(self._write_input(process, input))
        timed_out = False
        try:
            # The stdin write shares the deadline; a child that never reads must still time out.
            try:
                await asyncio.wait_for(process.wait(), timeout=timeout_seconds)
            except TimeoutError:
                timed_out = True
                logger.warning(
                    "Process %s timed out after %.1fs; terminating", process.pid, timeout_seconds
                )
                await self._terminate(process)
        finally:
            # Cancellation and unexpected errors land here too; the child must not survive.
            if process.returncode is None:
                self._signal(process, signal.SIGKILL)
                await process.wait()
            # Grandchildren may still hold the pipes open after the leader exited.
            self._kill_group(process.pid)
            if not writer.done():
                writer.cancel()
            (write_error,) = await asyncio.gather(writer, return_exceptions=True)
            if isinstance(write_error, Exception):
                logger.debug("Writing input to process %s failed: %s", process.pid, write_error)
            try:
                await asyncio.wait_for(readers, timeout=self.kill_grace_seconds)
            except TimeoutError:
                readers.cancel()

        duration_ms = int((time.monotonic() - started) * 1000)
        stdout = b"".join(stdout_chunks).decode("utf-8", errors="replace")
        stderr = b"".join(stderr_chunks).decode("utf-8", errors="replace")
        exit_code = TIMEOUT_EXIT_CODE if timed_out else int(process.returncode or 0)
        logger.debug(
            "Process %s finished: exit_code=%s timed_out=%s duration=%sms",
            process.pid,
            exit_code,
            timed_out,
            duration_ms,
        )
        return ProcessOutcome(
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            duration_ms=duration_ms,
            timed_out=timed_out,
        )
