"""Configuration models for agent plugin instances."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


class AgentConfig(BaseModel):
    """Describes how Loom should drive one agent CLI."""

    id: str = Field(..., description="Unique identifier for this agent configuration.")
    plugin: str = Field(..., description="Registered plugin id, e.g. 'codex' or 'claude'.")
    command: str | None = Field(
        default=None,
        description="Executable name or path; defaults to the plugin's own command.",
    )
    model: str | None = Field(default=None, description="Model passed to the agent CLI.")
    timeout: float | None = Field(
        default=None,
        description="Per-invocation timeout in seconds. Unset means no timeout.",
    )
    options: dict[str, Any] = Field(
        default_factory=dict,
        description="Plugin-specific options such as autonomy or sandbox flags.",
    )
    env: dict[str, str] = Field(
        default_factory=dict,
        description="Extra environment variables for every invocation.",
    )
    sandbox_writable_paths: list[str] = Field(
        default_factory=list,
        description="Paths besides the worktree that stay writable inside the sandbox.",
    )

    @field_validator("id", "plugin")
    @classmethod
    def _normalize_identifier(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Agent id and plugin must not be empty")
        return normalized

    @field_validator("command", "model", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("timeout")
    @classmethod
    def _validate_timeout(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            return None
        return value

    @field_validator("options", "env", mode="before")
    @classmethod
    def _ensure_mapping(cls, value: Any):  # type: ignore[override]
        if value is None:
            return {}
        return value


__all__ = ["AgentConfig"]
