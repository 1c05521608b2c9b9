"""Derived dependency state for tasks.

Blocking is a local, per-task predicate recomputed on every read: a task is
blocked iff one of its ``depends_on`` ids resolves to an existing task that is
not done.  Dangling ids are treated as resolved.  No global graph state is
kept, so cycles are tolerated: a cycle of unfinished tasks stays blocked.
"""

from __future__ import annotations

from typing import Iterable, Mapping, Optional

from .model import Task


def index_tasks(tasks: Iterable[Task]) -> dict[str, Task]:
    return {task.id: task for task in tasks}


def is_blocked(tasks_by_id: Mapping[str, Task], task_id: str) -> bool:
    """Return True iff *task_id* has an existing, unfinished dependency.

    Unknown task ids are never blocked.
    """
    task = tasks_by_id.get(task_id)
    if task is None:
        return False
    for dep_id in task.depends_on:
        dep = tasks_by_id.get(dep_id)
        if dep is not None and not dep.is_done:
            return True
    return False


def blocking_tasks(tasks_by_id: Mapping[str, Task], task_id: str) -> list[str]:
    """Ids of the dependencies currently blocking *task_id*, in depends_on order."""
    task = tasks_by_id.get(task_id)
    if task is None:
        return []
    return [
        dep_id
        for dep_id in task.depends_on
        if dep_id in tasks_by_id and not tasks_by_id[dep_id].is_done
    ]


def dependents(tasks_by_id: Mapping[str, Task], task_id: str) -> list[str]:
    """Ids of tasks that list *task_id* in their depends_on."""
    return [t.id for t in tasks_by_id.values() if task_id in t.depends_on]


def ready_tasks(tasks_by_id: Mapping[str, Task], project_id: Optional[str] = None) -> list[Task]:
    """Unfinished, unarchived, unblocked tasks sorted by priority then age."""
    ready = [
        t
        for t in tasks_by_id.values()
        if not t.is_done
        and not t.archived
        and (project_id is None or t.project_id == project_id)
        and not is_blocked(tasks_by_id, t.id)
    ]
    ready.sort(key=lambda t: (t.priority, t.created_at))
    return ready
