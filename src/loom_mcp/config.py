"""Configuration management for Loom MCP."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated
import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .sandbox import AUTO, SandboxMode


class LoomSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    agent: str = Field(default="codex", validation_alias="LOOM_AGENT")
    agent_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(Path("agents"),), validation_alias="LOOM_AGENT_PATHS"
    )
    max_workers: int = Field(default=3, validation_alias="LOOM_MAX_WORKERS")
    max_iterations: int = Field(default=10, validation_alias="LOOM_MAX_ITERATIONS")
    agent_timeout: float | None = Field(default=None, validation_alias="LOOM_AGENT_TIMEOUT")
    sandbox: str = Field(default=AUTO, validation_alias="LOOM_SANDBOX")
    worktree_root: Path = Field(
        default=Path(".loom/worktrees"), validation_alias="LOOM_WORKTREE_ROOT"
    )
    branch_prefix: str = Field(default="loom/", validation_alias="LOOM_BRANCH_PREFIX")
    env_exclude: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(), validation_alias="LOOM_ENV_EXCLUDE"
    )
    log_level: str = Field(default="INFO", validation_alias="LOOM_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "LOOM_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("agent")
    @classmethod
    def _normalize_agent(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("LOOM_AGENT must not be empty")
        return normalized

    @field_validator("agent_paths", mode="before")
    @classmethod
    def _parse_agent_paths(cls, value):
        if value is None or value == "":
            return (Path("agents"),)
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or (Path("agents"),)
        raise TypeError("LOOM_AGENT_PATHS must be a list of paths or a path-separated string")

    @field_validator("max_workers", "max_iterations")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("LOOM_MAX_WORKERS and LOOM_MAX_ITERATIONS must be >= 1")
        return value

    @field_validator("agent_timeout", mode="before")
    @classmethod
    def _parse_timeout(cls, value):
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        return value

    @field_validator("agent_timeout")
    @classmethod
    def _validate_timeout(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            raise ValueError("LOOM_AGENT_TIMEOUT must be a positive number of seconds")
        return value

    @field_validator("sandbox")
    @classmethod
    def _validate_sandbox(cls, value: str) -> str:
        normalized = value.strip().lower()
        allowed = {AUTO, *(mode.value for mode in SandboxMode)}
        if normalized not in allowed:
            raise ValueError(f"LOOM_SANDBOX must be one of {', '.join(sorted(allowed))}")
        return normalized

    @field_validator("env_exclude", mode="before")
    @classmethod
    def _parse_env_exclude(cls, value):
        if value is None or value == "":
            return ()
        if isinstance(value, str):
            return tuple(part.strip() for part in value.split(",") if part.strip())
        if isinstance(value, (list, tuple)):
            return tuple(str(item).strip() for item in value if str(item).strip())
        raise TypeError("LOOM_ENV_EXCLUDE must be a comma-separated string or a list")


@lru_cache(maxsize=1)
def get_settings() -> LoomSettings:
    """Return cached settings instance."""

    settings = LoomSettings()
    settings.agent_paths = tuple(path.expanduser().resolve() for path in settings.agent_paths)
    settings.worktree_root = settings.worktree_root.expanduser()
    return settings


__all__ = ["LoomSettings", "get_settings"]
