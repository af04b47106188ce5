"""FastMCP server bootstrap for Loom."""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from fastmcp import Context, FastMCP

from . import __version__
from .agents import AgentConfigLoader, AgentRegistry, ConfigurationError, builtin_registry
from .config import LoomSettings, get_settings
from .tracker import InMemoryTracker
from .tools import register_tools
from .vcs import GitWorktreeManager, WorktreeManager


def configure_logging(level: str) -> None:
    """Configure root logging for the Loom server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def create_server(
    settings: Optional[LoomSettings] = None,
    *,
    tracker: InMemoryTracker | None = None,
    registry: AgentRegistry | None = None,
    worktrees: WorktreeManager | None = None,
    base_path: Path | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with its tools and status resource."""

    settings = settings or get_settings()
    tracker = tracker or InMemoryTracker()
    registry = registry or builtin_registry()
    worktrees = worktrees or GitWorktreeManager(settings.worktree_root)
    agent_configs = AgentConfigLoader(settings.agent_paths, builtin_plugins=registry.ids())

    server = FastMCP(
        name="Loom MCP",
        version=__version__,
        instructions=(
            "Loom runs several coding-agent CLIs in parallel against a task backlog, "
            "each in its own git worktree. Create tasks, start a run, and poll its "
            "status."
        ),
    )

    handles = register_tools(
        server,
        settings=settings,
        tracker=tracker,
        registry=registry,
        agent_configs=agent_configs,
        worktrees=worktrees,
        base_path=base_path,
    )
    run_state = handles.run_state

    @server.resource(
        "resource://loom/status",
        name="loom_status",
        title="Loom MCP Status",
        description="Provides the current runtime status for the Loom MCP server.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing basic runtime state."""

        try:
            agent_ids = sorted(agent_configs.load_all())
            agent_error: str | None = None
        except ConfigurationError as exc:
            agent_ids = []
            agent_error = str(exc)

        status_counts: dict[str, int] = {}
        for task in tracker.list_all():
            status_counts[task.status.value] = status_counts.get(task.status.value, 0) + 1

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "agents": {
                "default": settings.agent,
                "count": len(agent_ids),
                "ids": agent_ids,
                "plugins": registry.ids(),
                "error": agent_error,
            },
            "execution": {
                "max_workers": settings.max_workers,
                "max_iterations": settings.max_iterations,
                "agent_timeout": settings.agent_timeout,
                "sandbox": settings.sandbox,
                "worktree_root": str(settings.worktree_root),
            },
            "tasks": {
                "count": sum(status_counts.values()),
                "status_counts": status_counts,
            },
            "run": {
                "run_id": run_state.run_id,
                "status": run_state.status,
                "started_at": run_state.started_at,
                "finished_at": run_state.finished_at,
            },
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    setattr(server, "agent_configs", agent_configs)
    setattr(server, "agent_registry", registry)
    setattr(server, "tracker", tracker)
    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for running the Loom MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logging.getLogger(__name__).info(
        "Launching Loom MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "default_agent": settings.agent,
            "sandbox": settings.sandbox,
        },
    )
    server.run()


if __name__ == "__main__":
    main()
