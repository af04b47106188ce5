"""Agent plugin for the OpenAI Codex CLI."""

from __future__ import annotations

from typing import Any, Mapping, Sequence

from .base import (
    AgentExecuteOptions,
    AgentFileContext,
    AgentMeta,
    AgentPlugin,
    SetupQuestion,
    extract_error_message,
)
from .events import DisplayEvent, ErrorEvent, TextEvent, ToolResultEvent, ToolUseEvent
from .models import AgentConfig

SANDBOX_CHOICES = ("read-only", "workspace-write", "danger-full-access")


def _tool_name(call: Mapping[str, Any]) -> str:
    function = call.get("function")
    if isinstance(function, Mapping) and function.get("name"):
        return str(function["name"])
    return str(call.get("name") or "unknown")


def _tool_input(call: Mapping[str, Any]) -> Any:
    if call.get("input") is not None:
        return call["input"]
    if call.get("arguments") is not None:
        return call["arguments"]
    function = call.get("function")
    if isinstance(function, Mapping):
        return function.get("arguments")
    return None


def _parse_item(phase: str, item: Mapping[str, Any]) -> list[DisplayEvent]:
    """Map a ``codex exec --json`` thread item to display events."""

    kind = item.get("type") or item.get("item_type")
    if kind == "agent_message" and phase == "item.completed":
        text = item.get("text")
        return [TextEvent(text)] if isinstance(text, str) and text else []
    if kind == "command_execution":
        if phase == "item.started":
            return [ToolUseEvent("bash", {"command": item.get("command", "")})]
        if phase == "item.completed":
            return [ToolResultEvent()]
        return []
    if kind == "file_change" and phase == "item.completed":
        changes = item.get("changes") or []
        events: list[DisplayEvent] = []
        for change in changes:
            if isinstance(change, Mapping) and change.get("path"):
                events.append(
                    ToolUseEvent(str(change.get("kind") or "edit"), {"file_path": change["path"]})
                )
        return events
    if kind == "mcp_tool_call" and phase == "item.started":
        name = ".".join(str(part) for part in (item.get("server"), item.get("tool")) if part)
        return [ToolUseEvent(name or "mcp", item.get("arguments"))]
    if kind == "error":
        message = extract_error_message(item.get("message") or item)
        return [ErrorEvent(message or "Unknown error")]
    return []


def parse_codex_record(event: Mapping[str, Any]) -> list[DisplayEvent]:
    """Translate one Codex JSONL record. Unknown shapes produce no events."""

    kind = event.get("type")
    events: list[DisplayEvent] = []

    if kind in ("item.started", "item.updated", "item.completed"):
        item = event.get("item")
        return _parse_item(kind, item) if isinstance(item, Mapping) else []

    if kind == "turn.failed":
        message = extract_error_message(event.get("error"))
        return [ErrorEvent(message or "Turn failed")]

    if kind == "message" or isinstance(event.get("message"), Mapping):
        # user messages echo the prompt back
        if event.get("role") == "user":
            return []
        message = event.get("message")
        content = event.get("content")
        if content is None and isinstance(message, Mapping):
            content = message.get("content")
        if isinstance(content, list):
            for part in content:
                if not isinstance(part, Mapping):
                    continue
                if part.get("type") == "text" and part.get("text"):
                    events.append(TextEvent(str(part["text"])))
                elif part.get("type") in ("tool_use", "function_call"):
                    events.append(ToolUseEvent(_tool_name(part), _tool_input(part)))
        elif isinstance(content, str) and content:
            events.append(TextEvent(content))
        return events

    if kind == "function_call" or isinstance(event.get("function_call"), Mapping):
        call = event.get("function_call")
        if not isinstance(call, Mapping):
            call = event
        return [ToolUseEvent(_tool_name(call), _tool_input(call))]

    if kind in ("function_call_output", "tool_result"):
        if event.get("is_error") is True or "error" in event:
            message = extract_error_message(event.get("error"))
            events.append(ErrorEvent(message or "tool execution failed"))
        events.append(ToolResultEvent())
        return events

    if kind == "text" and event.get("text"):
        return [TextEvent(str(event["text"]))]

    if kind == "error" or event.get("error"):
        message = extract_error_message(event.get("error")) or extract_error_message(
            event.get("message")
        )
        return [ErrorEvent(message or "Unknown error")]

    return events


class CodexAgentPlugin(AgentPlugin):
    """Drives ``codex exec`` non-interactively with JSONL output."""

    meta = AgentMeta(
        id="codex",
        name="Codex CLI",
        description="OpenAI Codex CLI for AI-assisted coding",
        default_command="codex",
        install_hint="https://github.com/openai/codex",
        supports_streaming=True,
        supports_interrupt=True,
        supports_file_context=False,
        supports_subagent_tracing=True,
        structured_output_format="jsonl",
        skills_paths={"personal": "~/.codex/skills", "repo": ".codex/skills"},
    )

    def __init__(self) -> None:
        super().__init__()
        self._full_auto = True
        self._sandbox = "workspace-write"

    async def initialize(self, config: AgentConfig, **kwargs: Any) -> None:
        await super().initialize(config, **kwargs)
        options = config.options
        if isinstance(options.get("full_auto"), bool):
            self._full_auto = options["full_auto"]
        if options.get("sandbox") in SANDBOX_CHOICES:
            self._sandbox = options["sandbox"]

    def build_args(
        self,
        prompt: str,
        files: Sequence[AgentFileContext] | None = None,
        options: AgentExecuteOptions | None = None,
    ) -> list[str]:
        args = ["exec"]
        if self._full_auto:
            args.append("--full-auto")
        args.append("--json")
        if self._model:
            args.extend(["--model", self._model])
        args.extend(["--sandbox", self._sandbox])
        # the prompt goes through stdin; see get_stdin_input
        return args

    def get_stdin_input(
        self,
        prompt: str,
        files: Sequence[AgentFileContext] | None = None,
        options: AgentExecuteOptions | None = None,
    ) -> str:
        return prompt

    def parse_record(self, record: dict[str, Any]) -> list[DisplayEvent]:
        return parse_codex_record(record)

    async def validate_setup(self, answers: Mapping[str, Any]) -> str | None:
        sandbox = answers.get("sandbox")
        if sandbox is not None and sandbox not in SANDBOX_CHOICES:
            return f"sandbox must be one of {', '.join(SANDBOX_CHOICES)}"
        full_auto = answers.get("full_auto")
        if full_auto is not None and not isinstance(full_auto, bool):
            return "full_auto must be true or false"
        return None

    def get_setup_questions(self) -> list[SetupQuestion]:
        return [
            *super().get_setup_questions(),
            SetupQuestion(
                id="model",
                prompt="Model to use:",
                type="text",
                default="",
                help="OpenAI model to use (leave empty for default)",
            ),
            SetupQuestion(
                id="full_auto",
                prompt="Enable full-auto mode?",
                type="boolean",
                default=True,
                help="Auto-approve all actions for autonomous operation",
            ),
            SetupQuestion(
                id="sandbox",
                prompt="Sandbox mode:",
                type="select",
                default="workspace-write",
                help="Sandbox restrictions for file access",
                choices=(
                    ("read-only", "No file modifications"),
                    ("workspace-write", "Can modify workspace files"),
                    ("danger-full-access", "Full system access (dangerous)"),
                ),
            ),
        ]


__all__ = ["CodexAgentPlugin", "SANDBOX_CHOICES", "parse_codex_record"]
