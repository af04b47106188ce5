"""Process isolation helpers."""

from .detect import (
    AUTO,
    SandboxMode,
    command_exists,
    detect_sandbox_mode,
    find_command_path,
    resolve_sandbox_mode,
    wrap_command,
)

__all__ = [
    "AUTO",
    "SandboxMode",
    "command_exists",
    "detect_sandbox_mode",
    "find_command_path",
    "resolve_sandbox_mode",
    "wrap_command",
]
