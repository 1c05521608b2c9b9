"""Board engine: validated CRUD for projects, epics, tasks and webhooks.

This is the single writer path for the board.  Each mutation runs in one
store transaction and, once the transaction has committed, hands exactly one
domain event to the emitter (two for a task status change:
``task.updated`` plus ``task.status_changed``).  Emission never waits on
webhook delivery.
"""

from __future__ import annotations

from typing import Any, Callable, Iterable, Optional
from urllib.parse import urlparse

from loguru import logger

from ..constants import EVENT_NAMES, WILDCARD_EVENT
from ..errors import ValidationError
from . import resolver
from .model import (
    PRIORITIES,
    DEFAULT_PRIORITY,
    Delivery,
    Epic,
    Project,
    Task,
    TaskStatus,
    Webhook,
    generate_id,
)
from .store import BoardStore

Emitter = Callable[[str, dict[str, Any], Optional[dict[str, Any]]], Any]

_PROJECT_FIELDS = {"name", "description"}
_EPIC_FIELDS = {"title", "notes", "status"}
_TASK_FIELDS = {"title", "notes", "status", "priority", "epic_id", "depends_on"}
_WEBHOOK_FIELDS = {"name", "url", "secret", "events", "enabled"}


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------

def _require_text(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"'{field}' is required and must be non-empty", field=field)
    return value.strip()


def _optional_text(value: Any, field: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"'{field}' must be a string", field=field)
    return value


def _status(value: Any, field: str = "status") -> TaskStatus:
    try:
        return TaskStatus(value)
    except ValueError:
        valid = [s.value for s in TaskStatus]
        raise ValidationError(f"'{field}' must be one of {valid}, got {value!r}", field=field) from None


def _priority(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value not in PRIORITIES:
        raise ValidationError(f"'priority' must be one of {list(PRIORITIES)}, got {value!r}", field="priority")
    return value


def _depends_on(task_id: str, raw: Any) -> list[str]:
    """Normalize depends_on to an ordered, de-duplicated id list without self."""
    if raw is None:
        return []
    if isinstance(raw, str) or not isinstance(raw, Iterable):
        raise ValidationError("'depends_on' must be an array of task ids", field="depends_on")
    out: list[str] = []
    for dep in raw:
        if not isinstance(dep, str) or not dep.strip():
            raise ValidationError("'depends_on' entries must be non-empty strings", field="depends_on")
        dep = dep.strip()
        if dep == task_id:
            raise ValidationError(f"Task {task_id} cannot depend on itself", field="depends_on")
        if dep not in out:
            out.append(dep)
    return out


def _url(value: Any) -> str:
    url = _require_text(value, "url")
    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValidationError(f"'url' must be an http(s) URL, got {url!r}", field="url")
    return url


def _events(raw: Any) -> list[str]:
    if isinstance(raw, str) or not isinstance(raw, Iterable):
        raise ValidationError("'events' must be an array of event names", field="events")
    out: list[str] = []
    for name in raw:
        if name != WILDCARD_EVENT and name not in EVENT_NAMES:
            raise ValidationError(
                f"Unknown event {name!r}; expected one of {list(EVENT_NAMES)} or '{WILDCARD_EVENT}'",
                field="events",
            )
        if name not in out:
            out.append(name)
    if not out:
        raise ValidationError("'events' must contain at least one event name", field="events")
    return out


def _reject_unknown(changes: dict[str, Any], allowed: set[str], kind: str) -> None:
    unknown = sorted(set(changes) - allowed)
    if unknown:
        raise ValidationError(f"Cannot update {kind} field(s): {unknown}")


def _diff(entity: Any, changes: dict[str, Any]) -> dict[str, Any]:
    """Return ``{field: old_value}`` for fields whose value actually changes."""
    previous: dict[str, Any] = {}
    for key, value in changes.items():
        old = getattr(entity, key)
        if old != value:
            previous[key] = old.value if isinstance(old, TaskStatus) else old
    return previous


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class BoardEngine:
    """Manage projects, epics, tasks and webhook subscriptions.

    Parameters
    ----------
    store:
        The snapshot store.
    emit:
        Callable ``(event_name, payload, previous)`` invoked after every
        committed mutation; usually :meth:`EventDispatcher.emit`.
    """

    def __init__(self, store: BoardStore, emit: Optional[Emitter] = None) -> None:
        self.store = store
        self._emit_fn = emit

    def set_emitter(self, emit: Optional[Emitter]) -> None:
        self._emit_fn = emit

    def _emit(self, events: list[tuple[str, dict[str, Any], Optional[dict[str, Any]]]]) -> None:
        if self._emit_fn is None:
            return
        for name, payload, previous in events:
            self._emit_fn(name, payload, previous)

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def create_project(self, name: str, description: Optional[str] = None) -> Project:
        project = Project(name=_require_text(name, "name"), description=_optional_text(description, "description"))
        with self.store.transaction() as tx:
            tx.projects.add(project)
        logger.info("Created project {}: {}", project.id, project.name)
        self._emit([("project.created", project.to_dict(), None)])
        return project

    def get_project(self, project_id: str) -> Optional[Project]:
        return next((p for p in self.store.read_snapshot().projects if p.id == project_id), None)

    def list_projects(self) -> list[Project]:
        return self.store.read_snapshot().projects

    def update_project(self, project_id: str, changes: dict[str, Any]) -> Optional[Project]:
        with self.store.transaction() as tx:
            project = tx.projects.get(project_id)
            if project is None:
                return None
            _reject_unknown(changes, _PROJECT_FIELDS, "project")
            clean = dict(changes)
            if "name" in clean:
                clean["name"] = _require_text(clean["name"], "name")
            if "description" in clean:
                clean["description"] = _optional_text(clean["description"], "description")
            previous = _diff(project, clean)
            if not previous:
                return project
            for key in previous:
                setattr(project, key, clean[key])
            project.touch()
            tx.mark_dirty()
        self._emit([("project.updated", project.to_dict(), previous)])
        return project

    def delete_project(self, project_id: str) -> bool:
        """Delete a project and cascade to its epics and tasks.

        Other projects' depends_on entries pointing at removed tasks are left
        dangling; they no longer block.
        """
        with self.store.transaction() as tx:
            project = tx.projects.remove(project_id)
            if project is None:
                return False
            epics = tx.epics.remove_where(lambda e: e.project_id == project_id)
            tasks = tx.tasks.remove_where(lambda t: t.project_id == project_id)
        logger.info(
            "Deleted project {} ({} epics, {} tasks)", project_id, len(epics), len(tasks)
        )
        self._emit([("project.deleted", project.to_dict(), None)])
        return True

    def project_stats(self, project_id: str) -> Optional[dict[str, int]]:
        snapshot = self.store.read_snapshot()
        if not any(p.id == project_id for p in snapshot.projects):
            return None
        by_id = resolver.index_tasks(snapshot.tasks)
        stats = {"total": 0, "todo": 0, "in_progress": 0, "done": 0, "blocked": 0, "archived": 0}
        for task in snapshot.tasks:
            if task.project_id != project_id:
                continue
            if task.archived:
                stats["archived"] += 1
                continue
            stats["total"] += 1
            stats[task.status.value] += 1
            if resolver.is_blocked(by_id, task.id):
                stats["blocked"] += 1
        return stats

    def cleanup_project(
        self,
        project_id: str,
        archive_tasks: bool = True,
        delete_empty_epics: bool = True,
    ) -> Optional[dict[str, int]]:
        """Archive done tasks and drop epics left without active tasks."""
        events: list[tuple[str, dict[str, Any], Optional[dict[str, Any]]]] = []
        with self.store.transaction() as tx:
            if tx.projects.get(project_id) is None:
                return None
            archived = 0
            if archive_tasks:
                for task in tx.tasks.filter(lambda t: t.project_id == project_id and t.is_done and not t.archived):
                    task.archived = True
                    task.touch()
                    archived += 1
                    events.append(("task.archived", task.to_dict(), {"archived": False}))
                if archived:
                    tx.mark_dirty()
            deleted = 0
            if delete_empty_epics:
                for epic in tx.epics.filter(lambda e: e.project_id == project_id):
                    active = tx.tasks.filter(lambda t: t.epic_id == epic.id and not t.archived)
                    if active:
                        continue
                    tx.epics.remove(epic.id)
                    self._detach_epic(tx, epic.id)
                    deleted += 1
                    events.append(("epic.deleted", epic.to_dict(), None))
        logger.info("Cleaned up project {}: archived={} deleted_epics={}", project_id, archived, deleted)
        self._emit(events)
        return {"archived_tasks": archived, "deleted_epics": deleted}

    # ------------------------------------------------------------------
    # Epics
    # ------------------------------------------------------------------

    def create_epic(
        self,
        project_id: str,
        title: str,
        notes: Optional[str] = None,
        status: str = "todo",
    ) -> Epic:
        epic = Epic(
            project_id=project_id,
            title=_require_text(title, "title"),
            notes=_optional_text(notes, "notes"),
            status=_status(status),
        )
        with self.store.transaction() as tx:
            if tx.projects.get(project_id) is None:
                raise ValidationError(f"Project {project_id} does not exist", field="project_id")
            tx.epics.add(epic)
        logger.info("Created epic {} in {}: {}", epic.id, project_id, epic.title)
        self._emit([("epic.created", epic.to_dict(), None)])
        return epic

    def get_epic(self, epic_id: str) -> Optional[Epic]:
        return next((e for e in self.store.read_snapshot().epics if e.id == epic_id), None)

    def list_epics(self, project_id: Optional[str] = None) -> list[Epic]:
        epics = self.store.read_snapshot().epics
        if project_id is None:
            return epics
        return [e for e in epics if e.project_id == project_id]

    def update_epic(self, epic_id: str, changes: dict[str, Any]) -> Optional[Epic]:
        with self.store.transaction() as tx:
            epic = tx.epics.get(epic_id)
            if epic is None:
                return None
            _reject_unknown(changes, _EPIC_FIELDS, "epic")
            clean = dict(changes)
            if "title" in clean:
                clean["title"] = _require_text(clean["title"], "title")
            if "notes" in clean:
                clean["notes"] = _optional_text(clean["notes"], "notes")
            if "status" in clean:
                clean["status"] = _status(clean["status"])
            previous = _diff(epic, clean)
            if not previous:
                return epic
            for key in previous:
                setattr(epic, key, clean[key])
            epic.touch()
            tx.mark_dirty()
        self._emit([("epic.updated", epic.to_dict(), previous)])
        return epic

    def delete_epic(self, epic_id: str) -> bool:
        """Delete an epic; its tasks survive with ``epic_id`` cleared."""
        with self.store.transaction() as tx:
            epic = tx.epics.remove(epic_id)
            if epic is None:
                return False
            detached = self._detach_epic(tx, epic_id)
        logger.info("Deleted epic {} (detached {} tasks)", epic_id, detached)
        self._emit([("epic.deleted", epic.to_dict(), None)])
        return True

    @staticmethod
    def _detach_epic(tx: Any, epic_id: str) -> int:
        count = 0
        for task in tx.tasks.filter(lambda t: t.epic_id == epic_id):
            task.epic_id = None
            task.touch()
            count += 1
        if count:
            tx.mark_dirty()
        return count

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def create_task(
        self,
        project_id: str,
        title: str,
        epic_id: Optional[str] = None,
        notes: Optional[str] = None,
        priority: int = DEFAULT_PRIORITY,
        status: str = "todo",
        depends_on: Optional[list[str]] = None,
        task_id: Optional[str] = None,
    ) -> Task:
        """Create and persist a new task.

        Raises :class:`ValidationError` for an empty title, an unknown
        project/epic, a bad priority/status, or a self-dependency.
        """
        new_id = task_id.strip() if isinstance(task_id, str) and task_id.strip() else generate_id("task")
        task = Task(
            id=new_id,
            project_id=project_id,
            epic_id=epic_id,
            title=_require_text(title, "title"),
            notes=_optional_text(notes, "notes"),
            status=_status(status),
            priority=_priority(priority),
            depends_on=_depends_on(new_id, depends_on),
        )
        with self.store.transaction() as tx:
            if tx.projects.get(project_id) is None:
                raise ValidationError(f"Project {project_id} does not exist", field="project_id")
            if epic_id is not None and tx.epics.get(epic_id) is None:
                raise ValidationError(f"Epic {epic_id} does not exist", field="epic_id")
            if new_id in tx.tasks:
                raise ValidationError(f"Task {new_id} already exists", field="id")
            tx.tasks.add(task)
        logger.info("Created task {}: {}", task.id, task.title)
        self._emit([("task.created", task.to_dict(), None)])
        return task

    def get_task(self, task_id: str) -> Optional[Task]:
        return next((t for t in self.store.read_snapshot().tasks if t.id == task_id), None)

    def list_tasks(
        self,
        project_id: Optional[str] = None,
        *,
        include_archived: bool = False,
        status: Optional[str] = None,
        epic_id: Optional[str] = None,
    ) -> list[Task]:
        out: list[Task] = []
        for t in self.store.read_snapshot().tasks:
            if project_id is not None and t.project_id != project_id:
                continue
            if t.archived and not include_archived:
                continue
            if status and t.status.value != status:
                continue
            if epic_id is not None and t.epic_id != epic_id:
                continue
            out.append(t)
        return out

    def update_task(self, task_id: str, changes: dict[str, Any]) -> Optional[Task]:
        """Apply a partial update.  Returns the task, or None if unknown.

        Emits ``task.updated`` (with ``previous`` holding the changed fields'
        old values) and, when the status changed, ``task.status_changed``.
        """
        with self.store.transaction() as tx:
            task = tx.tasks.get(task_id)
            if task is None:
                return None
            _reject_unknown(changes, _TASK_FIELDS, "task")
            clean = dict(changes)
            if "title" in clean:
                clean["title"] = _require_text(clean["title"], "title")
            if "notes" in clean:
                clean["notes"] = _optional_text(clean["notes"], "notes")
            if "status" in clean:
                clean["status"] = _status(clean["status"])
            if "priority" in clean:
                clean["priority"] = _priority(clean["priority"])
            if "depends_on" in clean:
                clean["depends_on"] = _depends_on(task_id, clean["depends_on"])
            if clean.get("epic_id") is not None and tx.epics.get(clean["epic_id"]) is None:
                raise ValidationError(f"Epic {clean['epic_id']} does not exist", field="epic_id")
            previous = _diff(task, clean)
            if not previous:
                return task
            for key in previous:
                setattr(task, key, clean[key])
            task.touch()
            tx.mark_dirty()

        events: list[tuple[str, dict[str, Any], Optional[dict[str, Any]]]] = [
            ("task.updated", task.to_dict(), previous)
        ]
        if "status" in previous:
            logger.info("Task {} status {} -> {}", task_id, previous["status"], task.status.value)
            events.append(("task.status_changed", task.to_dict(), {"status": previous["status"]}))
        self._emit(events)
        return task

    def delete_task(self, task_id: str) -> bool:
        """Hard-delete a task.  Other tasks' references to it become dangling."""
        with self.store.transaction() as tx:
            task = tx.tasks.remove(task_id)
            if task is None:
                return False
            dangling = resolver.dependents(resolver.index_tasks(tx.tasks), task_id)
        logger.info("Deleted task {} ({} dependents now reference a missing task)", task_id, len(dangling))
        self._emit([("task.deleted", task.to_dict(), None)])
        return True

    def is_blocked(self, task_id: str) -> bool:
        return resolver.is_blocked(resolver.index_tasks(self.store.read_snapshot().tasks), task_id)

    def ready_tasks(self, project_id: Optional[str] = None) -> list[Task]:
        return resolver.ready_tasks(resolver.index_tasks(self.store.read_snapshot().tasks), project_id)

    def task_views(self, tasks: list[Task]) -> list[dict[str, Any]]:
        """Serialize tasks with their derived ``blocked`` / ``blocked_by`` state."""
        by_id = resolver.index_tasks(self.store.read_snapshot().tasks)
        views = []
        for task in tasks:
            data = task.to_dict()
            data["blocked_by"] = resolver.blocking_tasks(by_id, task.id)
            data["blocked"] = bool(data["blocked_by"])
            views.append(data)
        return views

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def create_webhook(
        self,
        url: str,
        events: list[str],
        secret: Optional[str] = None,
        name: Optional[str] = None,
        enabled: bool = True,
    ) -> Webhook:
        webhook = Webhook(
            url=_url(url),
            events=_events(events),
            secret=_optional_text(secret, "secret") or None,
            enabled=bool(enabled),
        )
        webhook.name = (name or "").strip() or urlparse(webhook.url).netloc
        with self.store.transaction() as tx:
            tx.webhooks.add(webhook)
        logger.info("Created webhook {} -> {} ({})", webhook.id, webhook.url, ",".join(webhook.events))
        return webhook

    def get_webhook(self, webhook_id: str) -> Optional[Webhook]:
        return next((w for w in self.store.read_snapshot().webhooks if w.id == webhook_id), None)

    def list_webhooks(self) -> list[Webhook]:
        return self.store.read_snapshot().webhooks

    def update_webhook(self, webhook_id: str, changes: dict[str, Any]) -> Optional[Webhook]:
        with self.store.transaction() as tx:
            webhook = tx.webhooks.get(webhook_id)
            if webhook is None:
                return None
            _reject_unknown(changes, _WEBHOOK_FIELDS, "webhook")
            clean = dict(changes)
            if "url" in clean:
                clean["url"] = _url(clean["url"])
            if "events" in clean:
                clean["events"] = _events(clean["events"])
            if "name" in clean:
                clean["name"] = _require_text(clean["name"], "name")
            if "secret" in clean:
                clean["secret"] = _optional_text(clean["secret"], "secret") or None
            if "enabled" in clean:
                clean["enabled"] = bool(clean["enabled"])
            if not _diff(webhook, clean):
                return webhook
            for key, value in clean.items():
                setattr(webhook, key, value)
            webhook.touch()
            tx.mark_dirty()
        logger.info("Updated webhook {}", webhook_id)
        return webhook

    def delete_webhook(self, webhook_id: str) -> bool:
        """Delete a webhook and its delivery history."""
        with self.store.transaction() as tx:
            if tx.webhooks.remove(webhook_id) is None:
                return False
            tx.deliveries.remove_where(lambda d: d.webhook_id == webhook_id)
        logger.info("Deleted webhook {}", webhook_id)
        return True

    def list_deliveries(self, webhook_id: str, limit: int = 50) -> list[Delivery]:
        """Delivery history for a webhook, newest first."""
        deliveries = [d for d in self.store.read_snapshot().deliveries if d.webhook_id == webhook_id]
        deliveries.sort(key=lambda d: d.created_at, reverse=True)
        return deliveries[: max(limit, 0)]

    def get_delivery(self, delivery_id: str) -> Optional[Delivery]:
        return next((d for d in self.store.read_snapshot().deliveries if d.id == delivery_id), None)
