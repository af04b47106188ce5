"""Normalized agent display events and their text rendering."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Literal, Mapping, Union


@dataclass(frozen=True, slots=True)
class TextEvent:
    content: str
    type: Literal["text"] = "text"


@dataclass(frozen=True, slots=True)
class ToolUseEvent:
    name: str
    input: Any = None
    type: Literal["tool_use"] = "tool_use"


@dataclass(frozen=True, slots=True)
class ToolResultEvent:
    type: Literal["tool_result"] = "tool_result"


@dataclass(frozen=True, slots=True)
class ErrorEvent:
    message: str
    type: Literal["error"] = "error"


DisplayEvent = Union[TextEvent, ToolUseEvent, ToolResultEvent, ErrorEvent]


class ColorTag(str, Enum):
    """Semantic colors; renderers decide what each one looks like."""

    BLUE = "blue"
    PURPLE = "purple"
    CYAN = "cyan"
    GREEN = "green"
    YELLOW = "yellow"
    PINK = "pink"
    MUTED = "muted"


_ANSI = {
    ColorTag.BLUE: "\x1b[34m",
    ColorTag.PURPLE: "\x1b[35m",
    ColorTag.CYAN: "\x1b[36m",
    ColorTag.GREEN: "\x1b[32m",
    ColorTag.YELLOW: "\x1b[33m",
    ColorTag.PINK: "\x1b[95m",
    ColorTag.MUTED: "\x1b[90m",
}
_ANSI_RESET = "\x1b[0m"


def resolve_color(tag: ColorTag | None, renderer: str = "plain") -> tuple[str, str]:
    """Map a semantic color to ``(prefix, suffix)`` for the given renderer."""

    if tag is None or renderer != "ansi":
        return "", ""
    return _ANSI[tag], _ANSI_RESET


@dataclass(frozen=True, slots=True)
class FormattedSegment:
    text: str
    color: ColorTag | None = None


def segments_to_text(segments: Iterable[FormattedSegment], renderer: str = "plain") -> str:
    parts = []
    for segment in segments:
        prefix, suffix = resolve_color(segment.color, renderer)
        parts.append(f"{prefix}{segment.text}{suffix}")
    return "".join(parts)


_ENV_PREFIX_RE = re.compile(r"^(\s*\w+=\S*\s+)+")
_MAX_COMMAND_CHARS = 100
_MAX_CONTENT_PREVIEW = 200


def format_command(command: str) -> str:
    """Return the meaningful part of a shell command with a ``$`` prefix."""

    cmd = command.replace("\n", " ").strip()
    if ";" in cmd:
        cmd = cmd.split(";")[-1].strip()
    cmd = _ENV_PREFIX_RE.sub("", cmd).strip()
    if len(cmd) > _MAX_COMMAND_CHARS:
        cmd = cmd[:_MAX_COMMAND_CHARS] + "..."
    return f"$ {cmd}"


def format_error(message: str) -> str:
    return f"[Error: {message}]"


def format_path(path: str) -> str:
    return path


def format_pattern(pattern: str) -> str:
    return f"pattern: {pattern}"


def format_url(url: str) -> str:
    return url


def _tool_call_segments(name: str, tool_input: Any) -> list[FormattedSegment]:
    segments = [FormattedSegment(f"[{name}]", ColorTag.BLUE)]
    if not isinstance(tool_input, Mapping):
        return segments

    def add(text: str, color: ColorTag | None = None) -> None:
        segments.append(FormattedSegment(" "))
        segments.append(FormattedSegment(text, color))

    if tool_input.get("description"):
        add(str(tool_input["description"]))
    if tool_input.get("command"):
        add(format_command(str(tool_input["command"])))
    path = tool_input.get("file_path") or tool_input.get("path")
    if path:
        add(format_path(str(path)), ColorTag.PURPLE)
    if tool_input.get("pattern"):
        add(format_pattern(str(tool_input["pattern"])), ColorTag.CYAN)
    if tool_input.get("query"):
        add(f"query: {tool_input['query']}", ColorTag.YELLOW)
    if tool_input.get("url"):
        add(format_url(str(tool_input["url"])), ColorTag.CYAN)
    content = tool_input.get("content")
    if isinstance(content, str) and content:
        if len(content) > _MAX_CONTENT_PREVIEW:
            preview = f"{content[:_MAX_CONTENT_PREVIEW]}... ({len(content)} chars)"
        else:
            preview = content
        add(f'"{preview}"')
    old, new = tool_input.get("old_string"), tool_input.get("new_string")
    if isinstance(old, str) and isinstance(new, str) and old and new:
        add(f'edit: "{old[:50]}..." -> "{new[:50]}..."')
    return segments


def format_tool_call(name: str, tool_input: Any = None) -> str:
    """Render a tool invocation as a single display line."""

    return segments_to_text(_tool_call_segments(name, tool_input)) + "\n"


def process_agent_events_to_segments(events: Iterable[DisplayEvent]) -> list[FormattedSegment]:
    """Convert display events into colored segments.

    Tool results carry no visible text; they only separate tool calls from the
    prose that follows.
    """

    segments: list[FormattedSegment] = []
    for event in events:
        if isinstance(event, TextEvent):
            if event.content:
                segments.append(FormattedSegment(event.content))
        elif isinstance(event, ToolUseEvent):
            segments.extend(_tool_call_segments(event.name, event.input))
            segments.append(FormattedSegment("\n"))
        elif isinstance(event, ErrorEvent):
            segments.append(FormattedSegment(format_error(event.message), ColorTag.PINK))
            segments.append(FormattedSegment("\n"))
    return segments


def process_agent_events(events: Iterable[DisplayEvent]) -> str:
    """Convert display events into plain display text."""

    return segments_to_text(process_agent_events_to_segments(events))


__all__ = [
    "ColorTag",
    "DisplayEvent",
    "ErrorEvent",
    "FormattedSegment",
    "TextEvent",
    "ToolResultEvent",
    "ToolUseEvent",
    "format_command",
    "format_error",
    "format_path",
    "format_pattern",
    "format_tool_call",
    "format_url",
    "process_agent_events",
    "process_agent_events_to_segments",
    "resolve_color",
    "segments_to_text",
]
