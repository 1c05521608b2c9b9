from __future__ import annotations

import concurrent.futures
import json
from pathlib import Path

import pytest

from flux_board.cli import main


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv('FLUX_DATA', raising=False)


def _run(capsys: pytest.CaptureFixture[str], tmp_path: Path, *argv: str) -> dict:
    rc = main(['--project-dir', str(tmp_path), *argv])
    assert rc == 0
    return json.loads(capsys.readouterr().out)


def test_project_and_task_flow(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    project = _run(capsys, tmp_path, 'project', 'create', 'Alpha')['project']
    first = _run(capsys, tmp_path, 'task', 'create', project['id'], 'First', '--priority', '0')['task']
    second = _run(capsys, tmp_path, 'task', 'create', project['id'], 'Second', '--depends-on', first['id'])['task']

    tasks = _run(capsys, tmp_path, 'task', 'list', project['id'])['tasks']
    by_id = {t['id']: t for t in tasks}
    assert by_id[second['id']]['blocked'] is True

    ready = _run(capsys, tmp_path, 'task', 'ready', '--json')['tasks']
    assert [t['id'] for t in ready] == [first['id']]

    _run(capsys, tmp_path, 'task', 'status', first['id'], 'done')
    ready = _run(capsys, tmp_path, 'task', 'ready', '--json')['tasks']
    assert [t['id'] for t in ready] == [second['id']]

    stats = _run(capsys, tmp_path, 'project', 'stats', project['id'], '--json')['stats']
    assert stats['done'] == 1

    result = _run(capsys, tmp_path, 'project', 'cleanup', project['id'])
    assert result == {'archived_tasks': 1, 'deleted_epics': 0}


def test_invalid_dependency_fails(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    project = _run(capsys, tmp_path, 'project', 'create', 'Alpha')['project']
    rc = main(['--project-dir', str(tmp_path), 'task', 'create', project['id'], 'Loop', '--depends-on', ''])
    assert rc == 1
    assert 'depends_on' in capsys.readouterr().err


def test_unknown_project_stats(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(['--project-dir', str(tmp_path), 'project', 'stats', 'proj-missing']) == 1


def test_webhook_add_and_list(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    webhook = _run(
        capsys, tmp_path, 'webhook', 'add', 'https://hooks.example.com/flux', '--events', 'task.created', '--secret', 'x'
    )['webhook']
    assert webhook['has_secret'] is True
    listed = _run(capsys, tmp_path, 'webhook', 'list')['webhooks']
    assert [w['id'] for w in listed] == [webhook['id']]
    assert _run(capsys, tmp_path, 'webhook', 'deliveries', webhook['id'])['deliveries'] == []


def test_ready_table_output(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    project = _run(capsys, tmp_path, 'project', 'create', 'Alpha')['project']
    _run(capsys, tmp_path, 'task', 'create', project['id'], 'Visible task')
    assert main(['--project-dir', str(tmp_path), 'task', 'ready']) == 0
    assert 'Visible task' in capsys.readouterr().out


def test_empty_project_name_fails(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(['--project-dir', str(tmp_path), 'project', 'create', '']) == 1
    assert 'name' in capsys.readouterr().err


def test_webhook_test_timeout_is_reported(
    tmp_path: Path, capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch
) -> None:
    webhook = _run(capsys, tmp_path, 'webhook', 'add', 'https://hooks.example.com/flux')['webhook']

    def _stalled(self, hook):
        raise concurrent.futures.TimeoutError()

    monkeypatch.setattr('flux_board.webhooks.delivery.WebhookWorker.run_test', _stalled)
    assert main(['--project-dir', str(tmp_path), 'webhook', 'test', webhook['id']]) == 1
    assert 'timed out' in capsys.readouterr().err
