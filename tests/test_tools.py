from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from loom_mcp.agents import AgentConfigLoader, CodexAgentPlugin, ConfigurationError, builtin_registry
from loom_mcp.config import LoomSettings
from loom_mcp.listeners import ListenerRegistry
from loom_mcp.parallel import ParallelEvent, ParallelEventType, ParallelSummary
from loom_mcp.tools import register_tools
from loom_mcp.tracker import InMemoryTracker, TaskStatus


class StubTool:
    def __init__(self, fn, name):
        self.fn = fn
        self.name = name


class StubServer:
    def __init__(self) -> None:
        self._tools: dict[str, StubTool] = {}

    def tool(self, *args, **kwargs):
        provided_name = None
        if args and isinstance(args[0], str):
            provided_name = args[0]
        provided_name = kwargs.get("name", provided_name)

        def decorator(fn):
            tool_name = provided_name or fn.__name__
            tool = StubTool(fn, tool_name)
            self._tools[tool_name] = tool
            return tool

        return decorator


class StubWorktrees:
    async def create_worktree(self, branch: str, base_path: Path) -> Path:
        return Path(base_path) / branch

    async def remove_worktree(self, path: Path) -> None:
        pass

    async def commit_all(self, path: Path, message: str) -> str | None:
        return None


class StubOrchestrator:
    instances: list["StubOrchestrator"] = []

    def __init__(self, tracker, worktrees, plugin_factory, *, hold: bool = True, **kwargs) -> None:
        self.plugin_factory = plugin_factory
        self.kwargs = kwargs
        self.cancel_calls: list[bool] = []
        self._hold = hold
        self._listeners: ListenerRegistry[ParallelEvent] = ListenerRegistry()
        self._release = asyncio.Event()
        StubOrchestrator.instances.append(self)

    def on(self, listener):
        return self._listeners.add(listener)

    def get_display_states(self):
        return []

    async def run(self) -> ParallelSummary:
        self._listeners.emit(
            ParallelEvent(type=ParallelEventType.WORKER_STARTED, worker_id="worker-1", task_id="T1")
        )
        self._listeners.emit(
            ParallelEvent(type=ParallelEventType.WORKER_PROGRESS, worker_id="worker-1", task_id="T1")
        )
        if self._hold:
            await self._release.wait()
        return ParallelSummary()

    async def cancel(self, *, interrupt: bool = False) -> None:
        self.cancel_calls.append(interrupt)
        self._release.set()


def build_handles(tmp_path: Path, *, hold: bool = True):
    agents_dir = tmp_path / "agents"
    agents_dir.mkdir()
    (agents_dir / "fast-codex.yml").write_text(
        "id: fast-codex\nplugin: codex\nmodel: gpt-5-codex\ncommand: /nonexistent/codex-cli\n",
        encoding="utf-8",
    )
    settings = LoomSettings(
        _env_file=None, agent="codex", sandbox="off", agent_paths=[agents_dir], max_workers=4
    )
    registry = builtin_registry()
    tracker = InMemoryTracker()
    StubOrchestrator.instances.clear()

    def factory(*args, **kwargs):
        return StubOrchestrator(*args, hold=hold, **kwargs)

    handles = register_tools(
        StubServer(),
        settings=settings,
        tracker=tracker,
        registry=registry,
        agent_configs=AgentConfigLoader([agents_dir], builtin_plugins=registry.ids()),
        worktrees=StubWorktrees(),
        base_path=tmp_path,
        orchestrator_factory=factory,
    )
    return handles, tracker


def test_list_agents_includes_builtin_and_file_configs(tmp_path: Path) -> None:
    handles, _ = build_handles(tmp_path)

    agents = {entry["id"]: entry for entry in handles.list_agents.fn()}

    assert set(agents) == {"claude", "codex", "fast-codex"}
    assert agents["fast-codex"]["model"] == "gpt-5-codex"
    assert agents["fast-codex"]["capabilities"]["id"] == "codex"
    assert agents["claude"]["capabilities"]["structured_output_format"] == "jsonl"


def test_detect_agent_reports_missing_cli(tmp_path: Path) -> None:
    handles, _ = build_handles(tmp_path)

    payload = asyncio.run(handles.detect_agent.fn(agent_id="fast-codex"))

    assert payload["agent_id"] == "fast-codex"
    assert payload["plugin"] == "codex"
    assert payload["available"] is False
    assert "not found" in payload["error"]
    assert payload["sandbox"] == "off"


def test_create_and_list_tasks(tmp_path: Path) -> None:
    handles, tracker = build_handles(tmp_path)

    created = handles.create_task.fn(title="Write docs", priority=1, task_id="DOC-1")
    handles.create_task.fn(title="Fix bug")

    assert created["task_id"] == "DOC-1"
    assert created["status"] == "open"
    assert len(handles.list_tasks.fn()) == 2
    assert handles.list_tasks.fn(status="done") == []
    assert tracker.get("DOC-1").priority == 1

    with pytest.raises(ValueError):
        handles.list_tasks.fn(status="bogus")


def test_start_status_and_cancel_run(tmp_path: Path) -> None:
    handles, _ = build_handles(tmp_path)

    async def scenario():
        started = await handles.start_run.fn(max_iterations=3)
        await asyncio.sleep(0)
        with pytest.raises(RuntimeError, match="still in progress"):
            await handles.start_run.fn()
        status = handles.run_status.fn()
        orchestrator = StubOrchestrator.instances[0]
        plugin = await orchestrator.plugin_factory()
        cancelled = await handles.cancel_run.fn(interrupt=True)
        return started, status, orchestrator, plugin, cancelled

    started, status, orchestrator, plugin, cancelled = asyncio.run(scenario())

    assert started["status"] == "running"
    assert started["agent_id"] == "codex"
    assert started["run_id"].startswith("run-")
    assert status["status"] == "running"
    assert [event["type"] for event in status["recent_events"]] == ["worker:started"]
    assert orchestrator.kwargs["max_workers"] == 4
    assert orchestrator.kwargs["max_iterations"] == 3
    assert orchestrator.kwargs["branch_prefix"] == "loom/"
    assert isinstance(plugin, CodexAgentPlugin)
    assert plugin.is_ready
    assert orchestrator.cancel_calls == [True]
    assert cancelled["status"] == "cancelled"
    assert handles.run_state.finished_at is not None
    assert handles.run_state.summary is not None


def test_run_finishes_on_its_own(tmp_path: Path) -> None:
    handles, _ = build_handles(tmp_path, hold=False)

    async def scenario():
        await handles.start_run.fn(agent_id="fast-codex")
        await handles.run_state.runner
        return handles.run_status.fn()

    status = asyncio.run(scenario())

    assert status["status"] == "finished"
    assert status["agent_id"] == "fast-codex"
    assert status["summary"]["total"] == 0


def test_start_run_rejects_unknown_agent(tmp_path: Path) -> None:
    handles, tracker = build_handles(tmp_path)
    handles.create_task.fn(title="Anything", task_id="T1")

    with pytest.raises(ConfigurationError, match="not found"):
        asyncio.run(handles.start_run.fn(agent_id="gemini"))

    assert StubOrchestrator.instances == []
    assert tracker.get("T1").status is TaskStatus.OPEN
    assert handles.run_state.status == "idle"


def test_cancel_without_run_is_noop(tmp_path: Path) -> None:
    handles, _ = build_handles(tmp_path)

    payload = asyncio.run(handles.cancel_run.fn())

    assert payload == {"run_id": None, "status": "idle"}
