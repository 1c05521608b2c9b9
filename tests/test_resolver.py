"""Tests for derived blocked/ready state (board/resolver.py)."""

from __future__ import annotations

from flux_board.board import resolver
from flux_board.board.model import Task, TaskStatus


def _tasks(*tasks: Task) -> dict[str, Task]:
    return resolver.index_tasks(tasks)


def test_no_dependencies_is_not_blocked() -> None:
    tasks = _tasks(Task(id="a", title="A"))
    assert resolver.is_blocked(tasks, "a") is False


def test_unknown_task_is_not_blocked() -> None:
    assert resolver.is_blocked({}, "nope") is False


def test_unfinished_dependency_blocks() -> None:
    tasks = _tasks(
        Task(id="a", title="A", status=TaskStatus.IN_PROGRESS),
        Task(id="b", title="B", depends_on=["a"]),
    )
    assert resolver.is_blocked(tasks, "b") is True
    assert resolver.blocking_tasks(tasks, "b") == ["a"]


def test_done_dependencies_do_not_block() -> None:
    tasks = _tasks(
        Task(id="a", title="A", status=TaskStatus.DONE),
        Task(id="b", title="B", status=TaskStatus.DONE),
        Task(id="c", title="C", depends_on=["a", "b"]),
    )
    assert resolver.is_blocked(tasks, "c") is False


def test_dangling_dependency_is_resolved() -> None:
    tasks = _tasks(Task(id="c", title="C", depends_on=["deleted-task"]))
    assert resolver.is_blocked(tasks, "c") is False
    assert resolver.blocking_tasks(tasks, "c") == []


def test_cross_project_dependency_blocks() -> None:
    tasks = _tasks(
        Task(id="a", project_id="p1", title="A"),
        Task(id="b", project_id="p2", title="B", depends_on=["a"]),
    )
    assert resolver.is_blocked(tasks, "b") is True


def test_cycle_stays_blocked() -> None:
    tasks = _tasks(
        Task(id="a", title="A", depends_on=["b"]),
        Task(id="b", title="B", depends_on=["a"]),
    )
    assert resolver.is_blocked(tasks, "a") is True
    assert resolver.is_blocked(tasks, "b") is True
    assert resolver.ready_tasks(tasks) == []


def test_dependents() -> None:
    tasks = _tasks(
        Task(id="a", title="A"),
        Task(id="b", title="B", depends_on=["a"]),
        Task(id="c", title="C", depends_on=["a", "b"]),
    )
    assert sorted(resolver.dependents(tasks, "a")) == ["b", "c"]
    assert resolver.dependents(tasks, "c") == []


def test_ready_tasks_sorted_by_priority_then_age() -> None:
    tasks = _tasks(
        Task(id="low", title="Low", priority=2, created_at="2024-01-01T00:00:00+00:00"),
        Task(id="high-new", title="High new", priority=0, created_at="2024-01-03T00:00:00+00:00"),
        Task(id="high-old", title="High old", priority=0, created_at="2024-01-02T00:00:00+00:00"),
        Task(id="done", title="Done", priority=0, status=TaskStatus.DONE),
        Task(id="archived", title="Archived", priority=0, archived=True),
        Task(id="blocked", title="Blocked", priority=0, depends_on=["low"]),
    )
    assert [t.id for t in resolver.ready_tasks(tasks)] == ["high-old", "high-new", "low"]


def test_ready_tasks_filters_by_project() -> None:
    tasks = _tasks(
        Task(id="a", project_id="p1", title="A"),
        Task(id="b", project_id="p2", title="B"),
    )
    assert [t.id for t in resolver.ready_tasks(tasks, project_id="p2")] == ["b"]
