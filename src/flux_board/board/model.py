"""Entity model for the board: projects, epics, tasks, webhooks and deliveries.

Every entity is a plain dataclass that round-trips through ``to_dict()`` /
``from_dict()`` so the whole board can be persisted as one snapshot.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TaskStatus(str, Enum):
    """Kanban column for tasks and epics."""

    TODO = "todo"
    IN_PROGRESS = "in_progress"
    DONE = "done"


class DeliveryOutcome(str, Enum):
    """State of one delivery sequence."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


PRIORITIES = (0, 1, 2)
DEFAULT_PRIORITY = 2


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_id(prefix: str) -> str:
    """Short human-friendly id: ``<prefix>-<8hex>``."""
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


def _enum(enum_cls: type[Enum], raw: Any, default: Enum) -> Any:
    if raw is None:
        return default
    if isinstance(raw, enum_cls):
        return raw
    try:
        return enum_cls(str(raw))
    except (ValueError, KeyError):
        return default


def _plain(data: dict[str, Any]) -> dict[str, Any]:
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in data.items()}


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

@dataclass
class Project:
    id: str = field(default_factory=lambda: generate_id("proj"))
    name: str = ""
    description: Optional[str] = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Project":
        return cls(
            id=str(data.get("id") or generate_id("proj")),
            name=str(data.get("name", "")),
            description=data.get("description"),
            created_at=str(data.get("created_at") or now_iso()),
            updated_at=str(data.get("updated_at") or now_iso()),
        )

    def touch(self) -> None:
        self.updated_at = now_iso()


@dataclass
class Epic:
    id: str = field(default_factory=lambda: generate_id("epic"))
    project_id: str = ""
    title: str = ""
    notes: Optional[str] = None
    status: TaskStatus = TaskStatus.TODO
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return _plain(asdict(self))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Epic":
        return cls(
            id=str(data.get("id") or generate_id("epic")),
            project_id=str(data.get("project_id", "")),
            title=str(data.get("title", "")),
            notes=data.get("notes"),
            status=_enum(TaskStatus, data.get("status"), TaskStatus.TODO),
            created_at=str(data.get("created_at") or now_iso()),
            updated_at=str(data.get("updated_at") or now_iso()),
        )

    def touch(self) -> None:
        self.updated_at = now_iso()


@dataclass
class Task:
    """The atomic unit of trackable work.

    ``depends_on`` is an ordered set of task ids; whether the task is blocked
    is derived on read and never stored.
    """

    id: str = field(default_factory=lambda: generate_id("task"))
    project_id: str = ""
    epic_id: Optional[str] = None
    title: str = ""
    notes: Optional[str] = None
    status: TaskStatus = TaskStatus.TODO
    priority: int = DEFAULT_PRIORITY
    depends_on: list[str] = field(default_factory=list)
    archived: bool = False
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return _plain(asdict(self))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        priority = data.get("priority", DEFAULT_PRIORITY)
        try:
            priority = int(priority)
        except (TypeError, ValueError):
            priority = DEFAULT_PRIORITY
        if priority not in PRIORITIES:
            priority = DEFAULT_PRIORITY
        return cls(
            id=str(data.get("id") or generate_id("task")),
            project_id=str(data.get("project_id", "")),
            epic_id=data.get("epic_id"),
            title=str(data.get("title", "")),
            notes=data.get("notes"),
            status=_enum(TaskStatus, data.get("status"), TaskStatus.TODO),
            priority=priority,
            depends_on=[str(d) for d in (data.get("depends_on") or [])],
            archived=bool(data.get("archived", False)),
            created_at=str(data.get("created_at") or now_iso()),
            updated_at=str(data.get("updated_at") or now_iso()),
        )

    @property
    def is_done(self) -> bool:
        return self.status == TaskStatus.DONE

    def touch(self) -> None:
        self.updated_at = now_iso()


@dataclass
class Webhook:
    id: str = field(default_factory=lambda: generate_id("wh"))
    name: str = ""
    url: str = ""
    secret: Optional[str] = None
    events: list[str] = field(default_factory=list)
    enabled: bool = True
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_public_dict(self) -> dict[str, Any]:
        """Serialize without the secret, exposing only whether one is set."""
        data = self.to_dict()
        data["has_secret"] = bool(data.pop("secret", None))
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Webhook":
        return cls(
            id=str(data.get("id") or generate_id("wh")),
            name=str(data.get("name", "")),
            url=str(data.get("url", "")),
            secret=data.get("secret") or None,
            events=[str(e) for e in (data.get("events") or [])],
            enabled=bool(data.get("enabled", True)),
            created_at=str(data.get("created_at") or now_iso()),
            updated_at=str(data.get("updated_at") or now_iso()),
        )

    def touch(self) -> None:
        self.updated_at = now_iso()


@dataclass
class Delivery:
    """One delivery sequence (first attempt plus retries) to one webhook."""

    id: str = field(default_factory=lambda: generate_id("dlv"))
    webhook_id: str = ""
    event: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    status_code: Optional[int] = None
    response_body: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    outcome: DeliveryOutcome = DeliveryOutcome.PENDING
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    completed_at: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return _plain(asdict(self))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Delivery":
        status_code = data.get("status_code")
        return cls(
            id=str(data.get("id") or generate_id("dlv")),
            webhook_id=str(data.get("webhook_id", "")),
            event=str(data.get("event", "")),
            payload=dict(data.get("payload") or {}),
            status_code=int(status_code) if status_code is not None else None,
            response_body=data.get("response_body"),
            error=data.get("error"),
            attempts=int(data.get("attempts", 0) or 0),
            outcome=_enum(DeliveryOutcome, data.get("outcome"), DeliveryOutcome.PENDING),
            created_at=str(data.get("created_at") or now_iso()),
            updated_at=str(data.get("updated_at") or now_iso()),
            completed_at=data.get("completed_at"),
        )

    @property
    def is_terminal(self) -> bool:
        return self.outcome != DeliveryOutcome.PENDING


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------

@dataclass
class BoardSnapshot:
    """The whole board as persisted by a storage adapter."""

    projects: list[Project] = field(default_factory=list)
    epics: list[Epic] = field(default_factory=list)
    tasks: list[Task] = field(default_factory=list)
    webhooks: list[Webhook] = field(default_factory=list)
    deliveries: list[Delivery] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": 1,
            "projects": [p.to_dict() for p in self.projects],
            "epics": [e.to_dict() for e in self.epics],
            "tasks": [t.to_dict() for t in self.tasks],
            "webhooks": [w.to_dict() for w in self.webhooks],
            "deliveries": [d.to_dict() for d in self.deliveries],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BoardSnapshot":
        def _items(key: str) -> list[dict[str, Any]]:
            raw = data.get(key)
            if not isinstance(raw, list):
                return []
            return [item for item in raw if isinstance(item, dict)]

        return cls(
            projects=[Project.from_dict(d) for d in _items("projects")],
            epics=[Epic.from_dict(d) for d in _items("epics")],
            tasks=[Task.from_dict(d) for d in _items("tasks")],
            webhooks=[Webhook.from_dict(d) for d in _items("webhooks")],
            deliveries=[Delivery.from_dict(d) for d in _items("deliveries")],
        )
