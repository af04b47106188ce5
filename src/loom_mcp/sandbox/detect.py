"""Sandbox mode detection and command wrapping."""

from __future__ import annotations

import asyncio
import logging
import shutil
import sys
from enum import Enum
from pathlib import Path
from typing import Iterable, Sequence

logger = logging.getLogger(__name__)

AUTO = "auto"
PROBE_TIMEOUT_SECONDS = 2.0


class SandboxMode(str, Enum):
    """Concrete isolation strategies. ``auto`` is a request, never a mode."""

    BWRAP = "bwrap"
    SANDBOX_EXEC = "sandbox-exec"
    OFF = "off"


async def find_command_path(
    command: str, *, timeout: float = PROBE_TIMEOUT_SECONDS
) -> str | None:
    """Resolve ``command`` on PATH, giving up after ``timeout`` seconds."""

    if not command or not command.strip():
        return None
    try:
        return await asyncio.wait_for(asyncio.to_thread(shutil.which, command.strip()), timeout)
    except asyncio.TimeoutError:
        logger.warning("PATH probe timed out", extra={"command": command, "timeout": timeout})
        return None
    except OSError as exc:
        logger.debug("PATH probe failed", extra={"command": command, "error": str(exc)})
        return None


async def command_exists(command: str, *, timeout: float = PROBE_TIMEOUT_SECONDS) -> bool:
    """Return True if ``command`` resolves on PATH within ``timeout`` seconds."""

    return await find_command_path(command, timeout=timeout) is not None


async def detect_sandbox_mode(*, platform: str | None = None) -> SandboxMode:
    """Probe the host for an isolation helper appropriate to its platform."""

    current = platform or sys.platform
    if current.startswith("linux"):
        if await command_exists("bwrap"):
            return SandboxMode.BWRAP
        return SandboxMode.OFF
    if current == "darwin":
        if await command_exists("sandbox-exec"):
            return SandboxMode.SANDBOX_EXEC
        return SandboxMode.OFF
    return SandboxMode.OFF


async def resolve_sandbox_mode(
    requested: str | SandboxMode, *, platform: str | None = None
) -> SandboxMode:
    """Resolve a requested mode (``auto`` or explicit) to a concrete one."""

    if isinstance(requested, SandboxMode):
        return requested
    normalized = requested.strip().lower()
    if normalized == AUTO:
        mode = await detect_sandbox_mode(platform=platform)
        logger.info("Resolved sandbox mode", extra={"requested": AUTO, "mode": mode.value})
        return mode
    try:
        return SandboxMode(normalized)
    except ValueError as exc:
        valid = ", ".join([AUTO, *(mode.value for mode in SandboxMode)])
        raise ValueError(f"Unknown sandbox mode '{requested}'. Expected one of: {valid}") from exc


def _seatbelt_profile(writable: Sequence[Path]) -> str:
    rules = "".join(f' (subpath "{path}")' for path in writable)
    return (
        "(version 1)"
        "(allow default)"
        "(deny file-write*)"
        f"(allow file-write*{rules}"
        ' (subpath "/private/tmp") (subpath "/private/var/folders") (literal "/dev/null"))'
    )


def wrap_command(
    mode: SandboxMode,
    argv: Sequence[str],
    *,
    workspace: str | Path,
    writable_paths: Iterable[str | Path] = (),
) -> list[str]:
    """Return ``argv`` rewritten to run inside the given sandbox.

    Only ``workspace`` and ``writable_paths`` stay writable; the rest of the
    filesystem is visible read-only. Network access is left untouched because
    agents need to reach their model APIs.
    """

    command = list(argv)
    if mode is SandboxMode.OFF:
        return command

    writable = [Path(workspace).resolve()]
    writable.extend(Path(path).expanduser().resolve() for path in writable_paths)

    if mode is SandboxMode.BWRAP:
        wrapped = [
            "bwrap",
            "--ro-bind", "/", "/",
            "--dev", "/dev",
            "--proc", "/proc",
            "--tmpfs", "/tmp",
        ]
        for path in writable:
            wrapped.extend(["--bind", str(path), str(path)])
        wrapped.extend(["--chdir", str(writable[0]), "--die-with-parent", "--"])
        return wrapped + command

    return ["sandbox-exec", "-p", _seatbelt_profile(writable), *command]


__all__ = [
    "AUTO",
    "SandboxMode",
    "command_exists",
    "detect_sandbox_mode",
    "find_command_path",
    "resolve_sandbox_mode",
    "wrap_command",
]
