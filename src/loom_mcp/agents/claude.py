"""Agent plugin for Anthropic's Claude command line client."""

from __future__ import annotations

from pathlib import Path
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


def _extra_directories(
    files: Sequence[AgentFileContext] | None, options: AgentExecuteOptions | None
) -> list[str]:
    """Return ``--add-dir`` arguments for the directories holding ``files``.

    Files inside the working directory need no extra grant and are skipped.
    """

    workspace = Path(options.cwd).resolve() if options and options.cwd else None
    directories: list[Path] = []
    for file in files or ():
        path = Path(file.path)
        if workspace is not None:
            path = (workspace / path).resolve()
            if workspace in path.parents:
                continue
        if path.parent not in directories:
            directories.append(path.parent)
    args: list[str] = []
    for directory in directories:
        args.extend(["--add-dir", str(directory)])
    return args


def _content_blocks(record: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    message = record.get("message")
    if not isinstance(message, Mapping):
        return []
    content = message.get("content")
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    if not isinstance(content, list):
        return []
    return [block for block in content if isinstance(block, Mapping)]


def _tool_result_error(block: Mapping[str, Any]) -> str:
    content = block.get("content")
    if isinstance(content, list):
        texts = [
            str(part.get("text"))
            for part in content
            if isinstance(part, Mapping) and part.get("text")
        ]
        return "\n".join(texts)
    return extract_error_message(content)


def parse_claude_record(record: Mapping[str, Any]) -> list[DisplayEvent]:
    """Translate one ``stream-json`` record into display events."""

    kind = record.get("type")
    events: list[DisplayEvent] = []

    if kind == "assistant":
        for block in _content_blocks(record):
            if block.get("type") == "text" and block.get("text"):
                events.append(TextEvent(str(block["text"])))
            elif block.get("type") == "tool_use":
                events.append(ToolUseEvent(str(block.get("name") or "unknown"), block.get("input")))
        return events

    if kind == "user":
        for block in _content_blocks(record):
            if block.get("type") != "tool_result":
                continue
            if block.get("is_error") is True:
                events.append(ErrorEvent(_tool_result_error(block) or "tool execution failed"))
            events.append(ToolResultEvent())
        return events

    if kind == "result":
        if record.get("is_error") is True:
            message = extract_error_message(record.get("result")) or str(
                record.get("subtype") or "error"
            )
            events.append(ErrorEvent(message))
        return events

    if kind == "error":
        message = extract_error_message(record.get("error")) or extract_error_message(
            record.get("message")
        )
        return [ErrorEvent(message or "Unknown error")]

    return events


class ClaudeAgentPlugin(AgentPlugin):
    """Drives ``claude --print`` with streaming JSON output."""

    meta = AgentMeta(
        id="claude",
        name="Claude Code",
        description="Anthropic Claude CLI for AI-assisted coding",
        default_command="claude",
        install_hint="npm install -g @anthropic-ai/claude-code",
        supports_streaming=True,
        supports_interrupt=True,
        supports_file_context=True,
        supports_subagent_tracing=True,
        structured_output_format="jsonl",
        skills_paths={"personal": "~/.claude/skills", "repo": ".claude/skills"},
    )

    def __init__(self) -> None:
        super().__init__()
        self._skip_permissions = True

    async def initialize(self, config: AgentConfig, **kwargs: Any) -> None:
        await super().initialize(config, **kwargs)
        skip = config.options.get("skip_permissions")
        if isinstance(skip, bool):
            self._skip_permissions = skip

    def build_args(
        self,
        prompt: str,
        files: Sequence[AgentFileContext] | None = None,
        options: AgentExecuteOptions | None = None,
    ) -> list[str]:
        args = ["--print", "--verbose", "--output-format", "stream-json"]
        if self._model:
            args.extend(["--model", self._model])
        if self._skip_permissions:
            args.append("--dangerously-skip-permissions")
        args.extend(_extra_directories(files, options))
        return args

    def get_stdin_input(
        self,
        prompt: str,
        files: Sequence[AgentFileContext] | None = None,
        options: AgentExecuteOptions | None = None,
    ) -> str:
        return prompt

    def parse_record(self, record: dict[str, Any]) -> list[DisplayEvent]:
        return parse_claude_record(record)

    def validate_model(self, model: str) -> str | None:
        if any(char.isspace() for char in model):
            return "model name must not contain whitespace"
        return None

    async def validate_setup(self, answers: Mapping[str, Any]) -> str | None:
        skip = answers.get("skip_permissions")
        if skip is not None and not isinstance(skip, bool):
            return "skip_permissions must be true or false"
        return None

    def get_setup_questions(self) -> list[SetupQuestion]:
        return [
            *super().get_setup_questions(),
            SetupQuestion(
                id="model",
                prompt="Model to use:",
                type="text",
                default="",
                help="Model alias or full name (leave empty for default)",
            ),
            SetupQuestion(
                id="skip_permissions",
                prompt="Skip permission prompts?",
                type="boolean",
                default=True,
                help="Required for unattended runs",
            ),
        ]


__all__ = ["ClaudeAgentPlugin", "parse_claude_record"]
