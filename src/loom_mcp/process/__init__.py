"""Subprocess execution primitives."""

from .runner import ProcessResult, ProcessSpawnError, StreamingProcess, run_process, spawn_streaming
from .utils import sanitize_environment

__all__ = [
    "ProcessResult",
    "ProcessSpawnError",
    "StreamingProcess",
    "run_process",
    "sanitize_environment",
    "spawn_streaming",
]
