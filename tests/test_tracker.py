from __future__ import annotations

import asyncio

import pytest
from pydantic import ValidationError

from loom_mcp.tracker import InMemoryTracker, Task, TaskNotFoundError, TaskStatus, TaskTracker


def test_list_open_orders_by_priority_then_insertion() -> None:
    tracker = InMemoryTracker(
        [
            Task(id="a", title="A", priority=3),
            Task(id="b", title="B", priority=1),
            Task(id="c", title="C", priority=3),
        ]
    )

    ids = [task.id for task in asyncio.run(tracker.list_open())]

    assert ids == ["b", "a", "c"]


def test_claim_is_exclusive() -> None:
    tracker = InMemoryTracker([Task(id="a", title="A")])

    async def scenario():
        return await asyncio.gather(tracker.claim("a"), tracker.claim("a"))

    assert sorted(asyncio.run(scenario())) == [False, True]
    assert tracker.get("a").status is TaskStatus.IN_PROGRESS
    assert asyncio.run(tracker.list_open()) == []


def test_complete_and_reopen() -> None:
    tracker = InMemoryTracker([Task(id="a", title="A"), Task(id="b", title="B")])

    async def scenario():
        await tracker.claim("a")
        await tracker.complete("a")
        await tracker.claim("b")
        await tracker.reopen("b")

    asyncio.run(scenario())

    assert tracker.get("a").status is TaskStatus.DONE
    assert tracker.get("b").status is TaskStatus.OPEN


def test_unknown_task_raises() -> None:
    tracker = InMemoryTracker()
    with pytest.raises(TaskNotFoundError):
        asyncio.run(tracker.claim("ghost"))


def test_add_task_rejects_duplicates() -> None:
    tracker = InMemoryTracker()
    tracker.add_task(Task(id="a", title="A"))
    with pytest.raises(ValueError, match="already exists"):
        tracker.add_task(Task(id="a", title="Again"))


def test_task_requires_title() -> None:
    with pytest.raises(ValidationError):
        Task(id="a", title="  ")


def test_in_memory_tracker_satisfies_protocol() -> None:
    assert isinstance(InMemoryTracker(), TaskTracker)
