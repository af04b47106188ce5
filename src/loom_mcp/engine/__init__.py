"""Single-task agent execution loop."""

from .engine import (
    AgentExecutionError,
    EngineEvent,
    EngineEventType,
    EngineNotInitializedError,
    EngineState,
    EngineStateError,
    EngineStatus,
    ExecutionEngine,
)
from .prompt import COMPLETION_MARKER, build_prompt

__all__ = [
    "AgentExecutionError",
    "COMPLETION_MARKER",
    "EngineEvent",
    "EngineEventType",
    "EngineNotInitializedError",
    "EngineState",
    "EngineStateError",
    "EngineStatus",
    "ExecutionEngine",
    "build_prompt",
]
