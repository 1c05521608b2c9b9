"""Tests for the mutation engine (board/engine.py)."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import pytest

from flux_board.board.engine import BoardEngine
from flux_board.board.model import Delivery, DeliveryOutcome, TaskStatus
from flux_board.board.store import BoardStore
from flux_board.errors import StorageError, ValidationError


class _Recorder:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any], Optional[dict[str, Any]]]] = []

    def __call__(self, name: str, payload: dict[str, Any], previous: Optional[dict[str, Any]]) -> None:
        self.events.append((name, payload, previous))

    @property
    def names(self) -> list[str]:
        return [name for name, _, _ in self.events]

    def clear(self) -> None:
        self.events.clear()


@pytest.fixture
def emitted() -> _Recorder:
    return _Recorder()


@pytest.fixture
def engine(tmp_path: Path, emitted: _Recorder) -> BoardEngine:
    return BoardEngine(BoardStore.open(tmp_path / ".flux" / "flux.json"), emit=emitted)


@pytest.fixture
def project_id(engine: BoardEngine, emitted: _Recorder) -> str:
    project = engine.create_project("Alpha")
    emitted.clear()
    return project.id


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------

class TestProjects:
    def test_create_emits_event(self, engine: BoardEngine, emitted: _Recorder) -> None:
        project = engine.create_project("  Alpha  ", "first")
        assert project.name == "Alpha"
        assert project.id.startswith("proj-")
        assert emitted.names == ["project.created"]
        assert emitted.events[0][1]["id"] == project.id

    def test_empty_name_rejected(self, engine: BoardEngine, emitted: _Recorder) -> None:
        with pytest.raises(ValidationError):
            engine.create_project("   ")
        assert engine.list_projects() == []
        assert emitted.events == []

    def test_update_reports_previous(self, engine: BoardEngine, emitted: _Recorder, project_id: str) -> None:
        project = engine.update_project(project_id, {"name": "Beta"})
        assert project is not None and project.name == "Beta"
        assert emitted.events == [("project.updated", project.to_dict(), {"name": "Alpha"})]

    def test_update_unknown_returns_none(self, engine: BoardEngine, emitted: _Recorder) -> None:
        assert engine.update_project("proj-missing", {"name": "X"}) is None
        assert emitted.events == []

    def test_update_unknown_field_rejected(self, engine: BoardEngine, project_id: str) -> None:
        with pytest.raises(ValidationError, match="owner"):
            engine.update_project(project_id, {"owner": "me"})

    def test_delete_cascades(self, engine: BoardEngine, emitted: _Recorder, project_id: str) -> None:
        other = engine.create_project("Other")
        epic = engine.create_epic(project_id, "Epic")
        task = engine.create_task(project_id, "Task", epic_id=epic.id)
        survivor = engine.create_task(other.id, "Survivor", depends_on=[task.id])
        emitted.clear()

        assert engine.delete_project(project_id) is True
        assert engine.get_project(project_id) is None
        assert engine.list_epics(project_id) == []
        assert engine.get_task(task.id) is None
        assert emitted.names == ["project.deleted"]
        assert emitted.events[0][1]["name"] == "Alpha"
        # The dangling dependency no longer blocks.
        assert engine.get_task(survivor.id).depends_on == [task.id]
        assert engine.is_blocked(survivor.id) is False

    def test_delete_unknown_returns_false(self, engine: BoardEngine, emitted: _Recorder) -> None:
        assert engine.delete_project("proj-missing") is False
        assert emitted.events == []

    def test_stats(self, engine: BoardEngine, project_id: str) -> None:
        a = engine.create_task(project_id, "A")
        engine.create_task(project_id, "B", depends_on=[a.id])
        engine.create_task(project_id, "C", status="in_progress")
        engine.create_task(project_id, "D", status="done")
        stats = engine.project_stats(project_id)
        assert stats == {"total": 4, "todo": 2, "in_progress": 1, "done": 1, "blocked": 1, "archived": 0}
        assert engine.project_stats("proj-missing") is None

    def test_cleanup_archives_done_and_drops_empty_epics(
        self, engine: BoardEngine, emitted: _Recorder, project_id: str
    ) -> None:
        finished_epic = engine.create_epic(project_id, "Finished")
        active_epic = engine.create_epic(project_id, "Active")
        empty_epic = engine.create_epic(project_id, "Empty")
        done = engine.create_task(project_id, "Done", epic_id=finished_epic.id, status="done")
        engine.create_task(project_id, "Open", epic_id=active_epic.id)
        emitted.clear()

        result = engine.cleanup_project(project_id)
        assert result == {"archived_tasks": 1, "deleted_epics": 2}
        assert engine.get_task(done.id).archived is True
        assert engine.get_task(done.id).epic_id is None
        assert [e.id for e in engine.list_epics(project_id)] == [active_epic.id]
        assert emitted.names.count("task.archived") == 1
        assert sorted(p["id"] for n, p, _ in emitted.events if n == "epic.deleted") == sorted(
            [finished_epic.id, empty_epic.id]
        )
        assert [t.title for t in engine.list_tasks(project_id)] == ["Open"]
        assert len(engine.list_tasks(project_id, include_archived=True)) == 2

    def test_cleanup_unknown_project(self, engine: BoardEngine) -> None:
        assert engine.cleanup_project("proj-missing") is None


# ---------------------------------------------------------------------------
# Epics
# ---------------------------------------------------------------------------

class TestEpics:
    def test_create_requires_known_project(self, engine: BoardEngine) -> None:
        with pytest.raises(ValidationError, match="does not exist"):
            engine.create_epic("proj-missing", "Epic")

    def test_invalid_status_rejected(self, engine: BoardEngine, project_id: str) -> None:
        with pytest.raises(ValidationError, match="status"):
            engine.create_epic(project_id, "Epic", status="blocked")

    def test_delete_clears_task_reference(self, engine: BoardEngine, emitted: _Recorder, project_id: str) -> None:
        epic = engine.create_epic(project_id, "Epic")
        task = engine.create_task(project_id, "Task", epic_id=epic.id)
        emitted.clear()

        assert engine.delete_epic(epic.id) is True
        kept = engine.get_task(task.id)
        assert kept is not None
        assert kept.epic_id is None
        assert emitted.names == ["epic.deleted"]

    def test_update_status(self, engine: BoardEngine, emitted: _Recorder, project_id: str) -> None:
        epic = engine.create_epic(project_id, "Epic")
        emitted.clear()
        updated = engine.update_epic(epic.id, {"status": "in_progress"})
        assert updated.status == TaskStatus.IN_PROGRESS
        assert emitted.events[0][0] == "epic.updated"
        assert emitted.events[0][2] == {"status": "todo"}


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

class TestTasks:
    def test_create_defaults(self, engine: BoardEngine, emitted: _Recorder, project_id: str) -> None:
        task = engine.create_task(project_id, "Write docs")
        assert task.id.startswith("task-")
        assert task.status == TaskStatus.TODO
        assert task.priority == 2
        assert task.depends_on == []
        assert emitted.names == ["task.created"]

    def test_empty_title_rejected(self, engine: BoardEngine, project_id: str) -> None:
        with pytest.raises(ValidationError, match="title"):
            engine.create_task(project_id, "")

    def test_self_dependency_rejected_on_create(
        self, engine: BoardEngine, emitted: _Recorder, project_id: str
    ) -> None:
        with pytest.raises(ValidationError, match="itself"):
            engine.create_task(project_id, "Loop", depends_on=["task-self"], task_id="task-self")
        assert engine.get_task("task-self") is None
        assert emitted.events == []

    def test_self_dependency_rejected_on_update(self, engine: BoardEngine, project_id: str) -> None:
        task = engine.create_task(project_id, "Task")
        with pytest.raises(ValidationError, match="itself"):
            engine.update_task(task.id, {"depends_on": [task.id]})
        assert engine.get_task(task.id).depends_on == []

    @pytest.mark.parametrize("priority", [-1, 3, "high", True])
    def test_bad_priority_rejected(self, engine: BoardEngine, project_id: str, priority: Any) -> None:
        with pytest.raises(ValidationError, match="priority"):
            engine.create_task(project_id, "Task", priority=priority)

    def test_unknown_epic_rejected(self, engine: BoardEngine, project_id: str) -> None:
        with pytest.raises(ValidationError, match="Epic"):
            engine.create_task(project_id, "Task", epic_id="epic-missing")

    def test_depends_on_deduplicated(self, engine: BoardEngine, project_id: str) -> None:
        task = engine.create_task(project_id, "Task", depends_on=["a", "b", "a"])
        assert task.depends_on == ["a", "b"]

    def test_duplicate_explicit_id_rejected(self, engine: BoardEngine, project_id: str) -> None:
        engine.create_task(project_id, "One", task_id="task-1")
        with pytest.raises(ValidationError, match="already exists"):
            engine.create_task(project_id, "Two", task_id="task-1")

    def test_partial_update_only_touches_given_fields(
        self, engine: BoardEngine, emitted: _Recorder, project_id: str
    ) -> None:
        task = engine.create_task(project_id, "Task", notes="old", priority=1)
        emitted.clear()
        updated = engine.update_task(task.id, {"notes": "new"})
        assert updated.notes == "new"
        assert updated.priority == 1
        assert updated.title == "Task"
        assert updated.updated_at >= task.updated_at
        assert emitted.events == [("task.updated", updated.to_dict(), {"notes": "old"})]

    def test_status_change_emits_status_changed(
        self, engine: BoardEngine, emitted: _Recorder, project_id: str
    ) -> None:
        task = engine.create_task(project_id, "Task")
        emitted.clear()
        engine.update_task(task.id, {"status": "done", "notes": "shipped"})
        assert emitted.names == ["task.updated", "task.status_changed"]
        assert emitted.events[0][2] == {"status": "todo", "notes": None}
        assert emitted.events[1][2] == {"status": "todo"}
        assert emitted.events[1][1]["status"] == "done"

    def test_noop_update_emits_nothing(self, engine: BoardEngine, emitted: _Recorder, project_id: str) -> None:
        task = engine.create_task(project_id, "Task")
        emitted.clear()
        same = engine.update_task(task.id, {"title": "Task", "status": "todo"})
        assert same.updated_at == task.updated_at
        assert emitted.events == []

    def test_update_unknown_returns_none(self, engine: BoardEngine, emitted: _Recorder) -> None:
        assert engine.update_task("task-missing", {"title": "X"}) is None
        assert engine.delete_task("task-missing") is False
        assert emitted.events == []

    def test_delete_emits_last_snapshot(self, engine: BoardEngine, emitted: _Recorder, project_id: str) -> None:
        task = engine.create_task(project_id, "Task", notes="keep me")
        emitted.clear()
        assert engine.delete_task(task.id) is True
        assert engine.get_task(task.id) is None
        name, payload, _ = emitted.events[0]
        assert name == "task.deleted"
        assert payload["id"] == task.id
        assert payload["notes"] == "keep me"

    def test_blocking_follows_dependency_status(self, engine: BoardEngine, project_id: str) -> None:
        a = engine.create_task(project_id, "A")
        b = engine.create_task(project_id, "B", depends_on=[a.id])
        assert engine.is_blocked(b.id) is True
        assert [t.id for t in engine.ready_tasks(project_id)] == [a.id]

        engine.update_task(a.id, {"status": "done"})
        assert engine.is_blocked(b.id) is False
        assert [t.id for t in engine.ready_tasks(project_id)] == [b.id]

    def test_task_views_include_blocked_state(self, engine: BoardEngine, project_id: str) -> None:
        a = engine.create_task(project_id, "A")
        b = engine.create_task(project_id, "B", depends_on=[a.id])
        views = {v["id"]: v for v in engine.task_views(engine.list_tasks(project_id))}
        assert views[a.id]["blocked"] is False
        assert views[b.id]["blocked"] is True
        assert views[b.id]["blocked_by"] == [a.id]

    def test_list_filters(self, engine: BoardEngine, project_id: str) -> None:
        epic = engine.create_epic(project_id, "Epic")
        engine.create_task(project_id, "A", epic_id=epic.id)
        engine.create_task(project_id, "B", status="done")
        assert [t.title for t in engine.list_tasks(project_id, status="done")] == ["B"]
        assert [t.title for t in engine.list_tasks(project_id, epic_id=epic.id)] == ["A"]


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------

class TestWebhooks:
    def test_create_and_public_view(self, engine: BoardEngine, emitted: _Recorder) -> None:
        webhook = engine.create_webhook("https://example.com/hook", ["task.created"], secret="s3cret")
        assert webhook.name == "example.com"
        public = webhook.to_public_dict()
        assert "secret" not in public
        assert public["has_secret"] is True
        assert emitted.events == []

    @pytest.mark.parametrize("url", ["ftp://example.com", "not a url", ""])
    def test_bad_url_rejected(self, engine: BoardEngine, url: str) -> None:
        with pytest.raises(ValidationError, match="url"):
            engine.create_webhook(url, ["*"])

    def test_unknown_event_rejected(self, engine: BoardEngine) -> None:
        with pytest.raises(ValidationError, match="Unknown event"):
            engine.create_webhook("https://example.com/hook", ["task.exploded"])

    def test_empty_events_rejected(self, engine: BoardEngine) -> None:
        with pytest.raises(ValidationError, match="at least one"):
            engine.create_webhook("https://example.com/hook", [])

    def test_update_and_disable(self, engine: BoardEngine) -> None:
        webhook = engine.create_webhook("https://example.com/hook", ["*"])
        updated = engine.update_webhook(webhook.id, {"enabled": False, "events": ["task.deleted"]})
        assert updated.enabled is False
        assert updated.events == ["task.deleted"]
        assert engine.update_webhook("wh-missing", {"enabled": False}) is None

    def test_delete_drops_deliveries(self, engine: BoardEngine) -> None:
        webhook = engine.create_webhook("https://example.com/hook", ["*"])
        with engine.store.transaction() as tx:
            tx.deliveries.add(Delivery(id="dlv-1", webhook_id=webhook.id, event="task.created"))
        assert engine.get_delivery("dlv-1") is not None
        assert engine.delete_webhook(webhook.id) is True
        assert engine.get_delivery("dlv-1") is None
        assert engine.delete_webhook(webhook.id) is False

    def test_list_deliveries_newest_first(self, engine: BoardEngine) -> None:
        webhook = engine.create_webhook("https://example.com/hook", ["*"])
        with engine.store.transaction() as tx:
            for i in range(3):
                tx.deliveries.add(
                    Delivery(
                        id=f"dlv-{i}",
                        webhook_id=webhook.id,
                        event="task.created",
                        outcome=DeliveryOutcome.SUCCESS,
                        created_at=f"2024-01-0{i + 1}T00:00:00+00:00",
                    )
                )
        assert [d.id for d in engine.list_deliveries(webhook.id)] == ["dlv-2", "dlv-1", "dlv-0"]
        assert [d.id for d in engine.list_deliveries(webhook.id, limit=1)] == ["dlv-2"]


def test_storage_failure_propagates(tmp_path: Path, emitted: _Recorder) -> None:
    path = tmp_path / "flux.json"
    path.write_text("{broken")
    engine = BoardEngine(BoardStore.open(path), emit=emitted)
    with pytest.raises(StorageError):
        engine.create_project("Alpha")
    assert emitted.events == []
