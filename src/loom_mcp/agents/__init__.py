"""Agent CLI adapters and their shared contract."""

from .base import (
    AgentDetectResult,
    AgentExecuteOptions,
    AgentExecutionHandle,
    AgentExecutionResult,
    AgentFileContext,
    AgentMeta,
    AgentPlugin,
    AgentUnavailableError,
    ConfigurationError,
    JsonlBuffer,
    ProtocolParseError,
    SetupQuestion,
    extract_error_message,
)
from .claude import ClaudeAgentPlugin
from .codex import CodexAgentPlugin
from .events import DisplayEvent, ErrorEvent, TextEvent, ToolResultEvent, ToolUseEvent
from .loader import AgentConfigLoader, load_agent_configs
from .models import AgentConfig
from .registry import AgentRegistry, builtin_registry

__all__ = [
    "AgentConfig",
    "AgentConfigLoader",
    "AgentDetectResult",
    "AgentExecuteOptions",
    "AgentExecutionHandle",
    "AgentExecutionResult",
    "AgentFileContext",
    "AgentMeta",
    "AgentPlugin",
    "AgentRegistry",
    "AgentUnavailableError",
    "ClaudeAgentPlugin",
    "CodexAgentPlugin",
    "ConfigurationError",
    "DisplayEvent",
    "ErrorEvent",
    "JsonlBuffer",
    "ProtocolParseError",
    "SetupQuestion",
    "TextEvent",
    "ToolResultEvent",
    "ToolUseEvent",
    "builtin_registry",
    "extract_error_message",
    "load_agent_configs",
]
