"""Agent configuration loading utilities."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

import yaml
from pydantic import ValidationError

from .base import ConfigurationError
from .models import AgentConfig


class AgentConfigLoader:
    """Loads agent configurations from YAML files on disk.

    Every plugin id listed in ``builtin_plugins`` gets a default configuration
    (``id == plugin``) unless a file already defines that id.
    """

    def __init__(
        self,
        search_paths: Iterable[Path] | None = None,
        *,
        builtin_plugins: Iterable[str] = (),
    ) -> None:
        paths = [Path(path) for path in (search_paths or [])]
        self._search_paths: list[Path] = [path for path in paths if path.exists()]
        self._builtin_plugins = tuple(builtin_plugins)

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    def load_all(self) -> dict[str, AgentConfig]:
        """Load configurations from all search paths.

        Later search paths override earlier ones when ids collide. All parse
        and validation problems are reported together in one error.
        """

        configs: dict[str, AgentConfig] = {}
        errors: list[str] = []

        for base in self._search_paths:
            for path in sorted(base.glob("*.yml")) + sorted(base.glob("*.yaml")):
                try:
                    document = yaml.safe_load(path.read_text(encoding="utf-8"))
                except yaml.YAMLError as exc:
                    errors.append(f"Failed to parse YAML in {path}: {exc}")
                    continue

                if document is None:
                    continue

                try:
                    config = AgentConfig.model_validate(document)
                except ValidationError as exc:
                    errors.append(f"Agent config validation error in {path}: {exc}")
                    continue

                configs[config.id] = config

        if errors:
            raise ConfigurationError("; ".join(errors))

        for plugin_id in self._builtin_plugins:
            configs.setdefault(plugin_id, AgentConfig(id=plugin_id, plugin=plugin_id))

        return configs

    def get(self, config_id: str) -> AgentConfig:
        configs = self.load_all()
        try:
            return configs[config_id]
        except KeyError as exc:
            raise ConfigurationError(
                f"Agent config '{config_id}' not found in search paths"
            ) from exc


def load_agent_configs(
    search_paths: Iterable[Path] | None = None, *, builtin_plugins: Iterable[str] = ()
) -> dict[str, AgentConfig]:
    """Convenience wrapper around :class:`AgentConfigLoader`."""

    return AgentConfigLoader(search_paths, builtin_plugins=builtin_plugins).load_all()


__all__ = ["AgentConfigLoader", "load_agent_configs"]
