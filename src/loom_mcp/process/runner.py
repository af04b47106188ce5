"""Async subprocess primitives used for every agent invocation."""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
import time
from dataclasses import dataclass
from typing import Callable, Mapping, Sequence

logger = logging.getLogger(__name__)

OutputCallback = Callable[[str], None]

_POSIX = os.name == "posix"
_READ_CHUNK_BYTES = 4096
_KILL_GRACE_SECONDS = 5.0


class ProcessSpawnError(RuntimeError):
    """Raised when the operating system refuses to start a child process."""


@dataclass(slots=True)
class ProcessResult:
    """Holds the outcome of a finished (or never started) child process."""

    exit_code: int | None
    signal: str | None
    stdout: str
    stderr: str
    error: str | None = None
    duration_ms: int = 0
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and self.signal is None and self.error is None


class StreamingProcess:
    """A running child process whose output is delivered incrementally.

    Instances are created by :func:`spawn_streaming`. Output callbacks receive
    decoded text in arrival order; multi-byte characters split across pipe
    reads are reassembled before delivery.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        *,
        command: str,
        stdin_text: str | None,
        timeout: float | None,
        on_stdout: OutputCallback | None,
        on_stderr: OutputCallback | None,
    ) -> None:
        self._process = process
        self._command = command
        self._timeout = timeout if timeout and timeout > 0 else None
        self._on_stdout = on_stdout
        self._on_stderr = on_stderr
        self._stdout_parts: list[str] = []
        self._stderr_parts: list[str] = []
        self._timed_out = False
        self._escalation: asyncio.Future | None = None
        self._started = time.monotonic()
        self._completion = asyncio.ensure_future(self._run(stdin_text))

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def is_running(self) -> bool:
        return not self._completion.done()

    @property
    def timed_out(self) -> bool:
        return self._timed_out

    async def wait(self) -> ProcessResult:
        """Wait for the child to exit and return its result."""

        return await asyncio.shield(self._completion)

    def interrupt(self) -> None:
        """Terminate the child and its process group.

        SIGTERM is sent at once; a child still alive after the grace period
        gets SIGKILL.
        """

        if self._process.returncode is not None or self._escalation is not None:
            return
        self._terminate()
        self._escalation = asyncio.ensure_future(self._escalate())

    async def _run(self, stdin_text: str | None) -> ProcessResult:
        readers = [
            asyncio.ensure_future(
                self._pump(self._process.stdout, self._stdout_parts, self._on_stdout)
            ),
            asyncio.ensure_future(
                self._pump(self._process.stderr, self._stderr_parts, self._on_stderr)
            ),
        ]
        try:
            await self._feed_stdin(stdin_text)
            if self._timeout is None:
                await self._process.wait()
            else:
                try:
                    await asyncio.wait_for(self._process.wait(), self._timeout)
                except asyncio.TimeoutError:
                    self._timed_out = True
                    logger.warning(
                        "Process exceeded timeout; terminating",
                        extra={"command": self._command, "timeout": self._timeout},
                    )
                    await self._shutdown()
        except asyncio.CancelledError:
            self._kill()
            for reader in readers:
                reader.cancel()
            raise
        finally:
            if self._escalation is not None and not self._escalation.done():
                self._escalation.cancel()

        _, pending = await asyncio.wait(readers, timeout=_KILL_GRACE_SECONDS)
        if pending:
            logger.warning(
                "Output pipes still open after process exit",
                extra={"command": self._command, "pid": self.pid},
            )
            for reader in pending:
                reader.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        return self._build_result()

    async def _feed_stdin(self, stdin_text: str | None) -> None:
        stdin = self._process.stdin
        if stdin is None:
            return
        try:
            if stdin_text:
                stdin.write(stdin_text.encode("utf-8"))
                await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Child closed stdin early", extra={"command": self._command})
        finally:
            stdin.close()

    async def _pump(
        self,
        stream: asyncio.StreamReader | None,
        parts: list[str],
        callback: OutputCallback | None,
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(_READ_CHUNK_BYTES)
            text = decoder.decode(chunk, final=not chunk)
            if text:
                parts.append(text)
                if callback is not None:
                    try:
                        callback(text)
                    except Exception:
                        logger.exception(
                            "Output callback failed", extra={"command": self._command}
                        )
            if not chunk:
                return

    async def _shutdown(self) -> None:
        self._terminate()
        await self._escalate()

    async def _escalate(self) -> None:
        try:
            await asyncio.wait_for(self._process.wait(), _KILL_GRACE_SECONDS)
        except asyncio.TimeoutError:
            self._kill()
            await self._process.wait()

    def _terminate(self) -> None:
        if self._process.returncode is not None:
            return
        try:
            if _POSIX:
                os.killpg(self._process.pid, signal.SIGTERM)
            else:  # pragma: no cover - windows
                self._process.terminate()
        except ProcessLookupError:
            pass

    def _kill(self) -> None:
        if self._process.returncode is not None:
            return
        try:
            if _POSIX:
                os.killpg(self._process.pid, signal.SIGKILL)
            else:  # pragma: no cover - windows
                self._process.kill()
        except ProcessLookupError:
            pass

    def _build_result(self) -> ProcessResult:
        returncode = self._process.returncode
        signal_name: str | None = None
        exit_code: int | None = returncode
        if self._timed_out:
            signal_name = "SIGTERM"
            exit_code = None
        elif returncode is not None and returncode < 0:
            try:
                signal_name = signal.Signals(-returncode).name
            except ValueError:
                signal_name = f"SIG{-returncode}"
            exit_code = None

        error: str | None = None
        if self._timed_out:
            error = f"Timed out after {self._timeout:g}s"
        elif signal_name is not None:
            error = f"Terminated by {signal_name}"
        elif exit_code:
            error = f"Exited with code {exit_code}"
        return ProcessResult(
            exit_code=exit_code,
            signal=signal_name,
            stdout="".join(self._stdout_parts),
            stderr="".join(self._stderr_parts),
            error=error,
            duration_ms=int((time.monotonic() - self._started) * 1000),
            timed_out=self._timed_out,
        )


async def spawn_streaming(
    command: str,
    args: Sequence[str] = (),
    *,
    cwd: str | os.PathLike[str] | None = None,
    env: Mapping[str, str] | None = None,
    stdin_text: str | None = None,
    timeout: float | None = None,
    on_stdout: OutputCallback | None = None,
    on_stderr: OutputCallback | None = None,
) -> StreamingProcess:
    """Start ``command`` and stream its output through the given callbacks.

    The child runs in its own session so that termination reaches any helper
    processes it forks. Raises :class:`ProcessSpawnError` if it cannot start.
    """

    argv = [command, *args]
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=None if cwd is None else str(cwd),
            env=None if env is None else dict(env),
            stdin=asyncio.subprocess.PIPE if stdin_text is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=_POSIX,
        )
    except (OSError, ValueError) as exc:
        raise ProcessSpawnError(f"Failed to execute {command}: {exc}") from exc

    logger.debug("Spawned process", extra={"command": command, "pid": process.pid})
    return StreamingProcess(
        process,
        command=command,
        stdin_text=stdin_text,
        timeout=timeout,
        on_stdout=on_stdout,
        on_stderr=on_stderr,
    )


async def run_process(
    command: str,
    args: Sequence[str] = (),
    *,
    cwd: str | os.PathLike[str] | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
    stdin_text: str | None = None,
) -> ProcessResult:
    """Run ``command`` to completion and return its buffered output.

    Never raises for process-level failures: spawn errors, non-zero exits and
    timeouts all come back as an unsuccessful :class:`ProcessResult`.
    """

    try:
        process = await spawn_streaming(
            command, args, cwd=cwd, env=env, stdin_text=stdin_text, timeout=timeout
        )
    except ProcessSpawnError as exc:
        return ProcessResult(exit_code=None, signal=None, stdout="", stderr=str(exc), error=str(exc))

    try:
        return await process.wait()
    except asyncio.CancelledError:
        process.interrupt()
        raise


__all__ = [
    "OutputCallback",
    "ProcessResult",
    "ProcessSpawnError",
    "StreamingProcess",
    "run_process",
    "spawn_streaming",
]
