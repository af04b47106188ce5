"""Lookup table of the agent plugins this package can drive."""

from __future__ import annotations

from typing import Any, Callable

from .base import AgentMeta, AgentPlugin, ConfigurationError
from .claude import ClaudeAgentPlugin
from .codex import CodexAgentPlugin

PluginFactory = Callable[[], AgentPlugin]


class AgentRegistry:
    """Maps plugin ids to factories producing fresh plugin instances."""

    def __init__(self) -> None:
        self._factories: dict[str, PluginFactory] = {}
        self._meta: dict[str, AgentMeta] = {}

    def register(self, plugin_cls: type[AgentPlugin], factory: PluginFactory | None = None) -> None:
        meta = plugin_cls.meta
        if meta.id in self._factories:
            raise ConfigurationError(f"Agent plugin '{meta.id}' is already registered")
        self._factories[meta.id] = factory or plugin_cls
        self._meta[meta.id] = meta

    def ids(self) -> list[str]:
        return sorted(self._factories)

    def __contains__(self, plugin_id: object) -> bool:
        return plugin_id in self._factories

    def create(self, plugin_id: str) -> AgentPlugin:
        """Return a new, uninitialized plugin instance."""

        try:
            factory = self._factories[plugin_id]
        except KeyError as exc:
            known = ", ".join(self.ids()) or "none"
            raise ConfigurationError(
                f"Unknown agent plugin '{plugin_id}'. Registered plugins: {known}"
            ) from exc
        return factory()

    def describe(self, plugin_id: str) -> dict[str, Any]:
        try:
            return self._meta[plugin_id].as_dict()
        except KeyError as exc:
            raise ConfigurationError(f"Unknown agent plugin '{plugin_id}'") from exc

    def list_meta(self) -> list[AgentMeta]:
        return [self._meta[plugin_id] for plugin_id in self.ids()]


def builtin_registry() -> AgentRegistry:
    """Return a registry holding the Codex and Claude adapters."""

    registry = AgentRegistry()
    registry.register(CodexAgentPlugin)
    registry.register(ClaudeAgentPlugin)
    return registry


__all__ = ["AgentRegistry", "PluginFactory", "builtin_registry"]
