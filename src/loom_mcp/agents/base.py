"""Shared contract and plumbing for agent CLI plugins."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Iterable, Mapping, Sequence
from uuid import uuid4

from ..process import ProcessResult, ProcessSpawnError, StreamingProcess, run_process, spawn_streaming
from ..process.utils import sanitize_environment
from ..sandbox import SandboxMode, find_command_path, wrap_command
from ..semver import compare_versions, extract_version
from .events import (
    DisplayEvent,
    ErrorEvent,
    FormattedSegment,
    process_agent_events,
    process_agent_events_to_segments,
)
from .models import AgentConfig

logger = logging.getLogger(__name__)

DETECT_TIMEOUT_SECONDS = 5.0
_STDERR_TAIL_CHARS = 500


class ConfigurationError(RuntimeError):
    """Raised when an agent configuration is missing or invalid."""


class AgentUnavailableError(RuntimeError):
    """Raised when a required agent CLI cannot be detected."""


class ProtocolParseError(ValueError):
    """Raised for agent output lines that are not valid protocol records."""


@dataclass(frozen=True, slots=True)
class AgentMeta:
    """Static capability metadata for an agent plugin."""

    id: str
    name: str
    description: str
    default_command: str
    install_hint: str = ""
    supports_streaming: bool = True
    supports_interrupt: bool = True
    supports_file_context: bool = False
    supports_subagent_tracing: bool = False
    structured_output_format: str | None = None
    skills_paths: Mapping[str, str] = field(default_factory=dict)
    min_version: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "default_command": self.default_command,
            "supports_streaming": self.supports_streaming,
            "supports_interrupt": self.supports_interrupt,
            "supports_file_context": self.supports_file_context,
            "supports_subagent_tracing": self.supports_subagent_tracing,
            "structured_output_format": self.structured_output_format,
            "skills_paths": dict(self.skills_paths),
            "min_version": self.min_version,
        }


@dataclass(slots=True)
class AgentDetectResult:
    available: bool
    version: str | None = None
    executable_path: str | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class AgentFileContext:
    path: str
    content: str | None = None


@dataclass(frozen=True, slots=True)
class SetupQuestion:
    id: str
    prompt: str
    type: str
    default: Any = None
    required: bool = False
    help: str = ""
    choices: tuple[tuple[str, str], ...] = ()


@dataclass(slots=True)
class AgentExecuteOptions:
    """Per-invocation settings and output callbacks."""

    cwd: str | os.PathLike[str] | None = None
    timeout: float | None = None
    env: Mapping[str, str] | None = None
    on_stdout: Callable[[str], None] | None = None
    on_stdout_segments: Callable[[list[FormattedSegment]], None] | None = None
    on_stderr: Callable[[str], None] | None = None
    on_events: Callable[[list[DisplayEvent]], None] | None = None
    on_jsonl_message: Callable[[dict[str, Any]], None] | None = None


@dataclass(slots=True)
class AgentExecutionResult:
    execution_id: str
    success: bool
    exit_code: int | None
    signal: str | None
    output: str
    stderr: str
    events: list[DisplayEvent]
    duration_ms: int
    error: str | None = None
    interrupted: bool = False


def extract_error_message(value: Any) -> str:
    """Normalize an error payload of unknown shape into display text."""

    if value is None or value == "":
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping):
        for key in ("message", "error"):
            candidate = value.get(key)
            if isinstance(candidate, str):
                return candidate
        try:
            return json.dumps(value, default=str)
        except (TypeError, ValueError):
            return "Unknown error"
    if isinstance(value, BaseException):
        return str(value)
    try:
        return json.dumps(value)
    except (TypeError, ValueError):
        return str(value)


class JsonlBuffer:
    """Split a chunked text stream into complete newline-terminated records."""

    def __init__(self) -> None:
        self._pending = ""

    @property
    def pending(self) -> str:
        return self._pending

    def feed(self, chunk: str) -> list[str]:
        lines = (self._pending + chunk).split("\n")
        self._pending = lines.pop()
        return lines

    def flush(self) -> list[str]:
        remainder, self._pending = self._pending, ""
        return [remainder] if remainder.strip() else []


def decode_record(line: str) -> dict[str, Any]:
    try:
        record = json.loads(line)
    except ValueError as exc:
        raise ProtocolParseError(f"Not a JSON record: {line[:80]!r}") from exc
    if not isinstance(record, dict):
        raise ProtocolParseError(f"Expected a JSON object, got {type(record).__name__}")
    return record


def _notify(callback: Callable[[Any], None] | None, payload: Any) -> None:
    if callback is None:
        return
    try:
        callback(payload)
    except Exception:
        logger.exception("Agent output listener failed")


class _OutputStream:
    """Turns raw stdout chunks into display events for one invocation."""

    def __init__(
        self,
        parse_record: Callable[[dict[str, Any]], list[DisplayEvent]],
        options: AgentExecuteOptions,
    ) -> None:
        self._parse_record = parse_record
        self._options = options
        self._buffer = JsonlBuffer()
        self._text_parts: list[str] = []
        self.events: list[DisplayEvent] = []

    @property
    def output(self) -> str:
        return "".join(self._text_parts)

    def feed(self, chunk: str) -> None:
        self._consume(self._buffer.feed(chunk))

    def finish(self) -> None:
        self._consume(self._buffer.flush())

    def _consume(self, lines: Iterable[str]) -> None:
        derived: list[DisplayEvent] = []
        for line in lines:
            stripped = line.strip()
            if not stripped:
                continue
            try:
                record = decode_record(stripped)
                _notify(self._options.on_jsonl_message, record)
                derived.extend(self._parse_record(record))
            except (ProtocolParseError, AttributeError, KeyError, TypeError, ValueError) as exc:
                logger.debug("Skipping unparseable agent output", extra={"error": str(exc)})
        self.deliver(derived)

    def deliver(self, events: list[DisplayEvent]) -> None:
        if not events:
            return
        self.events.extend(events)
        options = self._options
        _notify(options.on_events, list(events))
        segments = process_agent_events_to_segments(events)
        if segments:
            _notify(options.on_stdout_segments, segments)
        text = process_agent_events(events)
        if text:
            self._text_parts.append(text)
            _notify(options.on_stdout, text)


class AgentExecutionHandle:
    """Tracks one running agent invocation."""

    def __init__(
        self,
        execution_id: str,
        *,
        agent_name: str,
        stream: _OutputStream,
        process: StreamingProcess | None = None,
        spawn_error: str | None = None,
    ) -> None:
        self.execution_id = execution_id
        self._agent_name = agent_name
        self._stream = stream
        self._process = process
        self._spawn_error = spawn_error
        self._interrupted = False
        self._started = time.monotonic()
        self._result = asyncio.ensure_future(self._finalize())

    @property
    def is_running(self) -> bool:
        return not self._result.done()

    async def wait(self) -> AgentExecutionResult:
        return await asyncio.shield(self._result)

    def interrupt(self) -> None:
        if self._process is not None and self._process.is_running:
            self._interrupted = True
            self._process.interrupt()

    async def _finalize(self) -> AgentExecutionResult:
        if self._process is None:
            return AgentExecutionResult(
                execution_id=self.execution_id,
                success=False,
                exit_code=None,
                signal=None,
                output=self._stream.output,
                stderr=self._spawn_error or "",
                events=list(self._stream.events),
                duration_ms=int((time.monotonic() - self._started) * 1000),
                error=self._spawn_error,
            )

        process_result: ProcessResult = await self._process.wait()
        self._stream.finish()
        error: str | None = None
        if not process_result.success:
            error = self._describe_failure(process_result)
            self._stream.deliver([ErrorEvent(error)])
        return AgentExecutionResult(
            execution_id=self.execution_id,
            success=process_result.success,
            exit_code=process_result.exit_code,
            signal=process_result.signal,
            output=self._stream.output,
            stderr=process_result.stderr,
            events=list(self._stream.events),
            duration_ms=process_result.duration_ms,
            error=error,
            interrupted=self._interrupted,
        )

    def _describe_failure(self, result: ProcessResult) -> str:
        if self._interrupted:
            return f"{self._agent_name} was interrupted"
        detail = result.error or "failed"
        stderr_tail = result.stderr.strip()[-_STDERR_TAIL_CHARS:]
        if stderr_tail:
            return f"{self._agent_name}: {detail}: {stderr_tail}"
        return f"{self._agent_name}: {detail}"


class AgentPlugin(ABC):
    """Base class for adapters that drive one coding-agent CLI.

    Subclasses declare ``meta``, build the argument vector for their CLI and
    translate each structured output record into display events. Process
    management, sandboxing and stream buffering live here.
    """

    meta: ClassVar[AgentMeta]

    def __init__(self) -> None:
        self._config: AgentConfig | None = None
        self._command_path: str | None = None
        self._model: str | None = None
        self._default_timeout: float | None = None
        self._env: dict[str, str] = {}
        self._env_exclude: tuple[str, ...] = ()
        self._sandbox_mode = SandboxMode.OFF
        self._writable_paths: tuple[str, ...] = ()
        self._ready = False

    @property
    def config(self) -> AgentConfig | None:
        return self._config

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def command(self) -> str:
        return self._command_path or self.meta.default_command

    @property
    def model(self) -> str | None:
        return self._model

    @property
    def sandbox_mode(self) -> SandboxMode:
        return self._sandbox_mode

    async def initialize(
        self,
        config: AgentConfig,
        *,
        sandbox_mode: SandboxMode = SandboxMode.OFF,
        env_exclude: Sequence[str] = (),
    ) -> None:
        """Bind a configuration; raises ConfigurationError if it is invalid."""

        problem = await self.validate_setup(config.options)
        if problem:
            raise ConfigurationError(f"Invalid configuration for agent '{config.id}': {problem}")
        if config.model:
            problem = self.validate_model(config.model)
            if problem:
                raise ConfigurationError(f"Invalid model for agent '{config.id}': {problem}")

        self._config = config
        self._command_path = config.command
        self._model = config.model
        self._default_timeout = config.timeout
        self._env = dict(config.env)
        self._env_exclude = tuple(env_exclude)
        self._sandbox_mode = sandbox_mode
        self._writable_paths = tuple(config.sandbox_writable_paths)
        self._ready = True

    async def detect(self) -> AgentDetectResult:
        """Locate the CLI and read its version. Never raises."""

        path = await find_command_path(self.command)
        if path is None:
            hint = f" Install from: {self.meta.install_hint}" if self.meta.install_hint else ""
            return AgentDetectResult(
                available=False, error=f"{self.meta.name} not found in PATH.{hint}"
            )

        result = await run_process(path, ["--version"], timeout=DETECT_TIMEOUT_SECONDS)
        if result.timed_out:
            return AgentDetectResult(
                available=False, executable_path=path, error="Timeout waiting for --version"
            )
        if not result.success:
            return AgentDetectResult(
                available=False,
                executable_path=path,
                error=result.stderr.strip() or result.error or "Version check failed",
            )

        version = extract_version(result.stdout)
        if version is None:
            return AgentDetectResult(
                available=False,
                executable_path=path,
                error=f"Unable to parse {self.meta.id} version output: {result.stdout.strip()}",
            )
        if self.meta.min_version and compare_versions(version, self.meta.min_version) < 0:
            return AgentDetectResult(
                available=False,
                version=version,
                executable_path=path,
                error=f"{self.meta.name} {version} is older than required {self.meta.min_version}",
            )

        self._command_path = path
        return AgentDetectResult(available=True, version=version, executable_path=path)

    async def require_available(self) -> AgentDetectResult:
        detected = await self.detect()
        if not detected.available:
            raise AgentUnavailableError(detected.error or f"{self.meta.name} is unavailable")
        return detected

    @abstractmethod
    def build_args(
        self,
        prompt: str,
        files: Sequence[AgentFileContext] | None = None,
        options: AgentExecuteOptions | None = None,
    ) -> list[str]:
        """Return the CLI arguments for one invocation."""

    def get_stdin_input(
        self,
        prompt: str,
        files: Sequence[AgentFileContext] | None = None,
        options: AgentExecuteOptions | None = None,
    ) -> str | None:
        return None

    @abstractmethod
    def parse_record(self, record: dict[str, Any]) -> list[DisplayEvent]:
        """Translate one structured output record into display events."""

    def parse_output(self, data: str) -> list[DisplayEvent]:
        """Parse a block of complete output lines, skipping malformed ones."""

        events: list[DisplayEvent] = []
        for line in data.split("\n"):
            stripped = line.strip()
            if not stripped:
                continue
            try:
                events.extend(self.parse_record(decode_record(stripped)))
            except (ProtocolParseError, AttributeError, KeyError, TypeError, ValueError):
                continue
        return events

    async def execute(
        self,
        prompt: str,
        files: Sequence[AgentFileContext] | None = None,
        options: AgentExecuteOptions | None = None,
    ) -> AgentExecutionHandle:
        """Start the CLI and return a handle; failures never raise."""

        options = options or AgentExecuteOptions()
        execution_id = uuid4().hex
        stream = _OutputStream(self.parse_record, options)
        workspace = os.fspath(options.cwd) if options.cwd is not None else os.getcwd()
        argv = wrap_command(
            self._sandbox_mode,
            [self.command, *self.build_args(prompt, files, options)],
            workspace=workspace,
            writable_paths=self._writable_paths,
        )
        env = sanitize_environment({**self._env, **(options.env or {})}, exclude=self._env_exclude)
        timeout = options.timeout if options.timeout is not None else self._default_timeout

        try:
            process = await spawn_streaming(
                argv[0],
                argv[1:],
                cwd=workspace,
                env=env,
                stdin_text=self.get_stdin_input(prompt, files, options),
                timeout=timeout,
                on_stdout=stream.feed,
                on_stderr=options.on_stderr,
            )
        except ProcessSpawnError as exc:
            logger.warning(
                "Agent failed to start",
                extra={"agent": self.meta.id, "command": argv[0], "error": str(exc)},
            )
            stream.deliver([ErrorEvent(str(exc))])
            return AgentExecutionHandle(
                execution_id, agent_name=self.meta.name, stream=stream, spawn_error=str(exc)
            )

        logger.info(
            "Agent invocation started",
            extra={
                "agent": self.meta.id,
                "execution_id": execution_id,
                "pid": process.pid,
                "sandbox": self._sandbox_mode.value,
            },
        )
        return AgentExecutionHandle(
            execution_id, agent_name=self.meta.name, stream=stream, process=process
        )

    async def validate_setup(self, answers: Mapping[str, Any]) -> str | None:
        return None

    def validate_model(self, model: str) -> str | None:
        return None

    def get_setup_questions(self) -> list[SetupQuestion]:
        return [
            SetupQuestion(
                id="command",
                prompt=f"Path to {self.meta.name} executable:",
                type="path",
                default=self.meta.default_command,
                help="Leave as default to resolve the command on PATH",
            )
        ]


__all__ = [
    "AgentDetectResult",
    "AgentExecuteOptions",
    "AgentExecutionHandle",
    "AgentExecutionResult",
    "AgentFileContext",
    "AgentMeta",
    "AgentPlugin",
    "AgentUnavailableError",
    "ConfigurationError",
    "JsonlBuffer",
    "ProtocolParseError",
    "SetupQuestion",
    "decode_record",
    "extract_error_message",
]
