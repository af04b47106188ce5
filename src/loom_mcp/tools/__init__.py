"""Tool registration for Loom MCP."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable
from uuid import uuid4

from fastmcp import Context, FastMCP

from ..agents import AgentConfigLoader, AgentPlugin, AgentRegistry
from ..config import LoomSettings
from ..parallel import ParallelEvent, ParallelEventType, ParallelOrchestrator, ParallelSummary
from ..sandbox import resolve_sandbox_mode
from ..tracker import InMemoryTracker, Task, TaskStatus
from ..vcs import WorktreeManager

logger = logging.getLogger(__name__)

_RECENT_EVENT_LIMIT = 50

OrchestratorFactory = Callable[..., ParallelOrchestrator]


@dataclass(slots=True)
class RunState:
    """Book-keeping for the single run the server may have in flight."""

    run_id: str | None = None
    agent_id: str | None = None
    status: str = "idle"
    started_at: str | None = None
    finished_at: str | None = None
    orchestrator: ParallelOrchestrator | None = None
    runner: asyncio.Task | None = None
    summary: ParallelSummary | None = None
    error: str | None = None
    events: deque = field(default_factory=lambda: deque(maxlen=_RECENT_EVENT_LIMIT))

    @property
    def active(self) -> bool:
        return self.runner is not None and not self.runner.done()


@dataclass(slots=True)
class ToolHandles:
    list_agents: Any
    detect_agent: Any
    create_task: Any
    list_tasks: Any
    start_run: Any
    run_status: Any
    cancel_run: Any
    run_state: RunState


def _task_summary(task: Task) -> dict[str, Any]:
    return {
        "task_id": task.id,
        "title": task.title,
        "status": task.status.value,
        "priority": task.priority,
        "description": task.description,
        "created_at": task.created_at.isoformat(),
    }


def _event_summary(event: ParallelEvent) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "type": event.type.value,
        "worker_id": event.worker_id,
        "task_id": event.task_id,
        "timestamp": event.timestamp.isoformat(),
    }
    if event.engine_event is not None:
        payload["engine_event"] = event.engine_event.type.value
    if event.result is not None:
        payload["outcome"] = event.result.outcome.value
        payload["error"] = event.result.error
    return payload


def register_tools(
    server: FastMCP,
    *,
    settings: LoomSettings,
    tracker: InMemoryTracker,
    registry: AgentRegistry,
    agent_configs: AgentConfigLoader,
    worktrees: WorktreeManager,
    base_path: Path | None = None,
    orchestrator_factory: OrchestratorFactory = ParallelOrchestrator,
) -> ToolHandles:
    """Register Loom's MCP tools on the server."""

    run_state = RunState()
    repo_path = Path(base_path) if base_path is not None else Path.cwd()

    async def _build_plugin(agent_id: str) -> AgentPlugin:
        config = agent_configs.get(agent_id)
        if config.timeout is None and settings.agent_timeout is not None:
            config = config.model_copy(update={"timeout": settings.agent_timeout})
        plugin = registry.create(config.plugin)
        sandbox_mode = await resolve_sandbox_mode(settings.sandbox)
        await plugin.initialize(
            config, sandbox_mode=sandbox_mode, env_exclude=settings.env_exclude
        )
        return plugin

    def _list_agents(context: Context | None = None) -> list[dict[str, Any]]:
        """List configured agents together with their plugin capabilities."""

        catalog = []
        for config in agent_configs.load_all().values():
            entry: dict[str, Any] = {
                "id": config.id,
                "plugin": config.plugin,
                "command": config.command,
                "model": config.model,
                "timeout": config.timeout,
            }
            if config.plugin in registry:
                entry["capabilities"] = registry.describe(config.plugin)
            else:
                entry["error"] = f"Unknown plugin '{config.plugin}'"
            catalog.append(entry)

        _emit_log(context, "debug", "Listing Loom agents", extra={"count": len(catalog)})
        return catalog

    async def _detect_agent(
        agent_id: str | None = None, context: Context | None = None
    ) -> dict[str, Any]:
        """Check whether an agent's CLI is installed and report its version."""

        target = agent_id or settings.agent
        plugin = await _build_plugin(target)
        detected = await plugin.detect()
        payload = {
            "agent_id": target,
            "plugin": plugin.meta.id,
            "available": detected.available,
            "version": detected.version,
            "executable_path": detected.executable_path,
            "error": detected.error,
            "sandbox": plugin.sandbox_mode.value,
        }
        _emit_log(
            context,
            "info" if detected.available else "warning",
            "Agent detection finished",
            extra={"agent_id": target, "available": detected.available},
        )
        return payload

    def _create_task(
        title: str,
        description: str | None = None,
        priority: int = 2,
        task_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Add a task to the backlog."""

        task = tracker.add_task(
            Task(
                id=task_id or f"task-{uuid4().hex[:8]}",
                title=title,
                description=description,
                priority=priority,
            )
        )
        _emit_log(context, "info", "Task created", extra={"task_id": task.id})
        return _task_summary(task)

    def _list_tasks(
        status: str | None = None, context: Context | None = None
    ) -> list[dict[str, Any]]:
        """List tasks, optionally filtered by status."""

        wanted = TaskStatus(status) if status else None
        tasks = [task for task in tracker.list_all() if wanted is None or task.status is wanted]
        _emit_log(context, "debug", "Listing tasks", extra={"count": len(tasks)})
        return [_task_summary(task) for task in tasks]

    async def _execute_run(orchestrator: ParallelOrchestrator) -> None:
        try:
            run_state.summary = await orchestrator.run()
            run_state.status = "cancelled" if run_state.status == "cancelling" else "finished"
        except Exception as exc:
            run_state.status = "failed"
            run_state.error = str(exc)
            logger.exception("Parallel run failed", extra={"run_id": run_state.run_id})
        finally:
            run_state.finished_at = datetime.now(timezone.utc).isoformat()

    async def _start_run(
        agent_id: str | None = None,
        max_workers: int | None = None,
        max_iterations: int | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Start working through open tasks with parallel agents in the background."""

        if run_state.active:
            raise RuntimeError(f"Run {run_state.run_id} is still in progress")

        target = agent_id or settings.agent
        # fail fast on a bad configuration before anything is claimed
        await _build_plugin(target)

        orchestrator = orchestrator_factory(
            tracker,
            worktrees,
            lambda: _build_plugin(target),
            max_workers=max_workers or settings.max_workers,
            max_iterations=max_iterations or settings.max_iterations,
            base_path=repo_path,
            cwd=repo_path,
            branch_prefix=settings.branch_prefix,
        )
        run_stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        run_state.run_id = f"run-{run_stamp}-{uuid4().hex[:6]}"
        run_state.agent_id = target
        run_state.status = "running"
        run_state.started_at = datetime.now(timezone.utc).isoformat()
        run_state.finished_at = None
        run_state.summary = None
        run_state.error = None
        run_state.events.clear()
        run_state.orchestrator = orchestrator

        def _record(event: ParallelEvent) -> None:
            if event.type is not ParallelEventType.WORKER_PROGRESS:
                run_state.events.append(_event_summary(event))

        orchestrator.on(_record)
        run_state.runner = asyncio.create_task(_execute_run(orchestrator))

        _emit_log(
            context,
            "info",
            "Parallel run started",
            extra={"run_id": run_state.run_id, "agent_id": target},
        )
        return {"run_id": run_state.run_id, "status": run_state.status, "agent_id": target}

    def _run_status(context: Context | None = None) -> dict[str, Any]:
        """Report progress of the current or most recent run."""

        orchestrator = run_state.orchestrator
        workers = (
            [state.as_dict() for state in orchestrator.get_display_states()]
            if orchestrator is not None
            else []
        )
        payload = {
            "run_id": run_state.run_id,
            "agent_id": run_state.agent_id,
            "status": run_state.status,
            "started_at": run_state.started_at,
            "finished_at": run_state.finished_at,
            "workers": workers,
            "recent_events": list(run_state.events),
            "summary": run_state.summary.as_dict() if run_state.summary else None,
            "error": run_state.error,
        }
        _emit_log(
            context, "debug", "Run status requested", extra={"run_id": run_state.run_id}
        )
        return payload

    async def _cancel_run(
        interrupt: bool = False, context: Context | None = None
    ) -> dict[str, Any]:
        """Stop the current run; with interrupt, running agent processes are terminated."""

        if not run_state.active or run_state.orchestrator is None:
            return {"run_id": run_state.run_id, "status": run_state.status}

        run_state.status = "cancelling"
        await run_state.orchestrator.cancel(interrupt=interrupt)
        if run_state.runner is not None:
            await asyncio.shield(run_state.runner)
        _emit_log(
            context,
            "info",
            "Parallel run cancelled",
            extra={"run_id": run_state.run_id, "interrupt": interrupt},
        )
        return {"run_id": run_state.run_id, "status": run_state.status}

    tool_list_agents = server.tool(
        name="list_agents",
        description="List configured coding agents and the capabilities of their plugins.",
    )(_list_agents)

    tool_detect_agent = server.tool(
        name="detect_agent",
        description="Check that an agent CLI is installed and report its version.",
    )(_detect_agent)

    tool_create_task = server.tool(
        name="create_task",
        description="Add a task to the backlog worked on by parallel agents.",
    )(_create_task)

    tool_list_tasks = server.tool(
        name="list_tasks",
        description="List backlog tasks, optionally filtered by status.",
    )(_list_tasks)

    tool_start_run = server.tool(
        name="start_run",
        description=(
            "Start a background run that works open tasks in parallel, one agent per "
            "task, each inside its own git worktree."
        ),
    )(_start_run)

    tool_run_status = server.tool(
        name="run_status",
        description="Show worker progress and the summary of the current or last run.",
    )(_run_status)

    tool_cancel_run = server.tool(
        name="cancel_run",
        description="Cancel the current run and wait for its workers to stop.",
    )(_cancel_run)

    return ToolHandles(
        list_agents=tool_list_agents,
        detect_agent=tool_detect_agent,
        create_task=tool_create_task,
        list_tasks=tool_list_tasks,
        start_run=tool_start_run,
        run_status=tool_run_status,
        cancel_run=tool_cancel_run,
        run_state=run_state,
    )


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Log through the MCP context logger when one is available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)


__all__ = ["RunState", "ToolHandles", "register_tools"]
