from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from loom_mcp.agents.base import AgentExecuteOptions, AgentExecutionResult
from loom_mcp.engine import (
    COMPLETION_MARKER,
    AgentExecutionError,
    EngineEvent,
    EngineEventType,
    EngineNotInitializedError,
    EngineStateError,
    EngineStatus,
    ExecutionEngine,
)
from loom_mcp.engine.engine import can_transition
from loom_mcp.tracker import Task
from loom_mcp.vcs import WorktreeError


class FakeHandle:
    def __init__(self, output: str, success: bool, options: AgentExecuteOptions, block: bool):
        self._output = output
        self._success = success
        self._options = options
        self._release = asyncio.Event()
        if not block:
            self._release.set()
        self.interrupted = False

    async def wait(self) -> AgentExecutionResult:
        if self._output and self._options.on_stdout is not None:
            self._options.on_stdout(self._output)
        await self._release.wait()
        success = self._success and not self.interrupted
        return AgentExecutionResult(
            execution_id="exec",
            success=success,
            exit_code=0 if success else None,
            signal="SIGTERM" if self.interrupted else None,
            output=self._output,
            stderr="",
            events=[],
            duration_ms=1,
            error=None if success else "agent failed",
            interrupted=self.interrupted,
        )

    def interrupt(self) -> None:
        self.interrupted = True
        self._release.set()


class FakePlugin:
    """Replays scripted (output, success) pairs, repeating the last one."""

    def __init__(self, script: list[tuple[str, bool]], *, block: bool = False) -> None:
        self._script = list(script)
        self._block = block
        self.prompts: list[str] = []
        self.handles: list[FakeHandle] = []

    async def execute(self, prompt, files=None, options=None) -> FakeHandle:
        self.prompts.append(prompt)
        output, success = self._script.pop(0) if len(self._script) > 1 else self._script[0]
        handle = FakeHandle(output, success, options, self._block)
        self.handles.append(handle)
        return handle


class FakeVcs:
    def __init__(self, *, fail: bool = False) -> None:
        self.commits: list[tuple[Path, str]] = []
        self._fail = fail

    async def commit_all(self, path: Path, message: str) -> str | None:
        if self._fail:
            raise WorktreeError("git commit failed")
        self.commits.append((path, message))
        return f"sha{len(self.commits)}"


def make_engine(plugin, *, vcs=None, **options) -> ExecutionEngine:
    engine = ExecutionEngine(**options)
    engine.initialize(
        plugin, Path("/tmp/worktree"), task=Task(id="T1", title="Add feature"), vcs=vcs
    )
    return engine


def collect(engine: ExecutionEngine) -> list[EngineEvent]:
    events: list[EngineEvent] = []
    engine.on(events.append)
    return events


def types_of(events: list[EngineEvent]) -> list[str]:
    return [event.type.value for event in events]


def test_start_without_initialize_raises() -> None:
    engine = ExecutionEngine()
    with pytest.raises(EngineNotInitializedError, match="Execution engine not initialized"):
        asyncio.run(engine.start())


def test_runs_until_completion_marker() -> None:
    plugin = FakePlugin([("first pass", True), (f"all done {COMPLETION_MARKER}", True)])
    vcs = FakeVcs()
    engine = make_engine(plugin, vcs=vcs)
    events = collect(engine)

    asyncio.run(engine.start())

    assert types_of(events) == [
        "engine:started",
        "iteration:started",
        "agent:output",
        "task:auto-committed",
        "iteration:completed",
        "iteration:started",
        "agent:output",
        "task:auto-committed",
        "iteration:completed",
        "task:completed",
        "engine:stopped",
    ]
    commits = [event.commit_sha for event in events if event.type is EngineEventType.TASK_AUTO_COMMITTED]
    assert commits == ["sha1", "sha2"]
    state = engine.get_state()
    assert state.status is EngineStatus.COMPLETED
    assert state.tasks_completed == 1
    assert state.current_iteration == 2
    assert "first pass" in plugin.prompts[1]
    assert "iteration 2 of at most 10" in plugin.prompts[1]
    assert vcs.commits[0][1] == "T1: Add feature (iteration 1)"


def test_stops_at_iteration_limit() -> None:
    plugin = FakePlugin([("still going", True)])
    engine = make_engine(plugin, max_iterations=2)
    events = collect(engine)

    asyncio.run(engine.start())

    assert types_of(events).count("iteration:started") == 2
    assert "engine:iteration-limit" in types_of(events)
    assert engine.get_state().tasks_completed == 0
    assert engine.status is EngineStatus.COMPLETED


def test_consecutive_failures_raise() -> None:
    plugin = FakePlugin([("", False)])
    engine = make_engine(plugin, max_consecutive_failures=2)
    events = collect(engine)

    with pytest.raises(AgentExecutionError, match="2 consecutive"):
        asyncio.run(engine.start())

    assert types_of(events).count("iteration:failed") == 2
    assert types_of(events)[-1] == "engine:error"
    assert engine.status is EngineStatus.ERRORED


def test_success_resets_failure_streak() -> None:
    plugin = FakePlugin(
        [("", False), ("progress", True), ("", False), (COMPLETION_MARKER, True)]
    )
    engine = make_engine(plugin, max_consecutive_failures=2)

    asyncio.run(engine.start())

    assert engine.get_state().tasks_completed == 1
    assert engine.get_state().current_iteration == 4


def test_auto_commit_failure_does_not_stop_loop() -> None:
    plugin = FakePlugin([(COMPLETION_MARKER, True)])
    engine = make_engine(plugin, vcs=FakeVcs(fail=True))
    events = collect(engine)

    asyncio.run(engine.start())

    assert "task:auto-committed" not in types_of(events)
    assert engine.get_state().tasks_completed == 1


def test_stop_with_interrupt_cancels_in_flight_invocation() -> None:
    plugin = FakePlugin([("thinking", True)], block=True)
    engine = make_engine(plugin)
    events = collect(engine)

    async def scenario():
        runner = asyncio.create_task(engine.start())
        while not plugin.handles:
            await asyncio.sleep(0.01)
        await engine.stop(interrupt=True)
        assert runner.done()
        await runner

    asyncio.run(scenario())

    assert plugin.handles[0].interrupted
    assert engine.status is EngineStatus.CANCELLED
    assert types_of(events)[-1] == "engine:stopped"
    assert "iteration:failed" not in types_of(events)


def test_graceful_stop_lets_iteration_finish() -> None:
    plugin = FakePlugin([("partial", True)], block=True)
    engine = make_engine(plugin)
    events = collect(engine)

    async def scenario():
        runner = asyncio.create_task(engine.start())
        while not plugin.handles:
            await asyncio.sleep(0.01)
        stopper = asyncio.create_task(engine.stop())
        await asyncio.sleep(0.05)
        assert not stopper.done()
        plugin.handles[0]._release.set()
        await stopper
        await runner

    asyncio.run(scenario())

    assert not plugin.handles[0].interrupted
    assert "iteration:completed" in types_of(events)
    assert len(plugin.handles) == 1
    assert engine.status is EngineStatus.CANCELLED


def test_pause_and_resume_between_iterations() -> None:
    plugin = FakePlugin([("step", True), (COMPLETION_MARKER, True)])
    engine = make_engine(plugin)
    events = collect(engine)

    def on_event(event: EngineEvent) -> None:
        if event.type is EngineEventType.ITERATION_COMPLETED and event.iteration == 1:
            engine.pause()
        elif event.type is EngineEventType.ENGINE_PAUSED:
            assert engine.status is EngineStatus.PAUSED
            asyncio.get_running_loop().call_soon(engine.resume)

    engine.on(on_event)
    asyncio.run(engine.start())

    sequence = types_of(events)
    assert sequence.index("engine:paused") < sequence.index("engine:resumed")
    assert sequence.index("engine:resumed") < len(sequence) - sequence[::-1].index("iteration:started")
    assert engine.get_state().tasks_completed == 1


def test_illegal_transitions_raise() -> None:
    engine = make_engine(FakePlugin([("x", True)]))

    with pytest.raises(EngineStateError):
        engine.pause()
    with pytest.raises(EngineStateError):
        engine.resume()

    assert can_transition(EngineStatus.RUNNING, EngineStatus.PAUSING)
    assert can_transition(EngineStatus.PAUSED, EngineStatus.STOPPING)
    assert not can_transition(EngineStatus.IDLE, EngineStatus.PAUSED)
    assert not can_transition(EngineStatus.STOPPING, EngineStatus.RUNNING)


def test_stop_when_idle_is_noop() -> None:
    engine = make_engine(FakePlugin([("x", True)]))
    asyncio.run(engine.stop())
    assert engine.status is EngineStatus.IDLE


def test_unsubscribe_is_idempotent_and_listener_errors_are_contained() -> None:
    engine = make_engine(FakePlugin([(COMPLETION_MARKER, True)]))
    received: list[EngineEvent] = []

    def broken(_: EngineEvent) -> None:
        raise RuntimeError("listener bug")

    engine.on(broken)
    unsubscribe = engine.on(received.append)
    late: list[EngineEvent] = []
    engine.on(late.append)
    unsubscribe()
    unsubscribe()
    unsubscribe()

    asyncio.run(engine.start())

    assert received == []
    assert late
    assert engine.status is EngineStatus.COMPLETED


def test_engine_can_run_again_after_completion() -> None:
    plugin = FakePlugin([(COMPLETION_MARKER, True)])
    engine = make_engine(plugin)

    asyncio.run(engine.start())
    asyncio.run(engine.start())

    assert len(plugin.prompts) == 2
    assert engine.get_state().current_iteration == 1


class SlowSpawnPlugin(FakePlugin):
    """Holds execute() open until released, like a CLI that is slow to start."""

    def __init__(self, script: list[tuple[str, bool]]) -> None:
        super().__init__(script, block=True)
        self.spawning = asyncio.Event()
        self.spawned = asyncio.Event()

    async def execute(self, prompt, files=None, options=None) -> FakeHandle:
        self.spawning.set()
        await self.spawned.wait()
        return await super().execute(prompt, files, options)


def test_interrupting_stop_during_spawn_interrupts_new_handle() -> None:
    async def scenario():
        plugin = SlowSpawnPlugin([("thinking", True)])
        engine = make_engine(plugin)
        events = collect(engine)
        runner = asyncio.create_task(engine.start())
        await plugin.spawning.wait()
        stopper = asyncio.create_task(engine.stop(interrupt=True))
        await asyncio.sleep(0)
        plugin.spawned.set()
        await asyncio.wait_for(stopper, 5)
        await runner
        return plugin, engine, events

    plugin, engine, events = asyncio.run(scenario())

    assert plugin.handles[0].interrupted
    assert engine.status is EngineStatus.CANCELLED
    assert "iteration:failed" not in types_of(events)
