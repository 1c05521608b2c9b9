from __future__ import annotations

import argparse
import concurrent.futures
import json
import sys
from pathlib import Path
from typing import Any, Optional

from rich.console import Console
from rich.table import Table

from .board.model import PRIORITIES
from .config import load_settings
from .container import BoardContainer
from .errors import FluxError
from .logging_utils import configure_logging
from .server import create_app


def _resolve_project_dir(project_dir: Optional[str]) -> Path:
    return Path(project_dir).expanduser().resolve() if project_dir else Path.cwd().resolve()


def _ctx(args: argparse.Namespace) -> BoardContainer:
    return BoardContainer(_resolve_project_dir(args.project_dir))


def _emit_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2) + '\n')


def _finish(container: BoardContainer) -> None:
    """Let webhook sequences started by this command run out, then close."""
    settings = container.settings
    budget = sum(settings.retry_delays) + (len(settings.retry_delays) + 1) * settings.delivery_timeout
    if not container.worker.wait_idle(timeout=budget):
        sys.stderr.write("Some webhook deliveries did not finish; they will be marked interrupted\n")
    container.close()


def _project_create(args: argparse.Namespace) -> int:
    container = _ctx(args)
    try:
        project = container.engine.create_project(args.name, args.description)
    except FluxError as exc:
        container.close()
        sys.stderr.write(str(exc) + '\n')
        return 1
    _finish(container)
    _emit_json({'project': project.to_dict()})
    return 0


def _project_list(args: argparse.Namespace) -> int:
    container = _ctx(args)
    projects = []
    for project in container.engine.list_projects():
        item = project.to_dict()
        item['stats'] = container.engine.project_stats(project.id)
        projects.append(item)
    container.close()
    _emit_json({'projects': projects})
    return 0


def _project_stats(args: argparse.Namespace) -> int:
    container = _ctx(args)
    stats = container.engine.project_stats(args.project_id)
    container.close()
    if stats is None:
        sys.stderr.write(f"Project {args.project_id} not found\n")
        return 1
    if args.json:
        _emit_json({'project_id': args.project_id, 'stats': stats})
        return 0
    table = Table(title=f"Project {args.project_id}")
    table.add_column("Metric", style="cyan")
    table.add_column("Count", justify="right")
    for key, value in stats.items():
        table.add_row(key, str(value))
    Console().print(table)
    return 0


def _project_cleanup(args: argparse.Namespace) -> int:
    container = _ctx(args)
    result = container.engine.cleanup_project(
        args.project_id,
        archive_tasks=not args.keep_tasks,
        delete_empty_epics=not args.keep_epics,
    )
    _finish(container)
    if result is None:
        sys.stderr.write(f"Project {args.project_id} not found\n")
        return 1
    _emit_json(result)
    return 0


def _task_create(args: argparse.Namespace) -> int:
    container = _ctx(args)
    try:
        task = container.engine.create_task(
            args.project_id,
            args.title,
            epic_id=args.epic_id,
            notes=args.notes,
            priority=args.priority,
            depends_on=args.depends_on or [],
        )
    except FluxError as exc:
        container.close()
        sys.stderr.write(str(exc) + '\n')
        return 1
    _finish(container)
    _emit_json({'task': task.to_dict()})
    return 0


def _task_list(args: argparse.Namespace) -> int:
    container = _ctx(args)
    engine = container.engine
    tasks = engine.list_tasks(args.project_id, include_archived=args.all, status=args.status)
    views = engine.task_views(tasks)
    container.close()
    _emit_json({'tasks': views})
    return 0


def _task_status(args: argparse.Namespace) -> int:
    container = _ctx(args)
    try:
        task = container.engine.update_task(args.task_id, {'status': args.status})
    except FluxError as exc:
        container.close()
        sys.stderr.write(str(exc) + '\n')
        return 1
    _finish(container)
    if task is None:
        sys.stderr.write(f"Task {args.task_id} not found\n")
        return 1
    _emit_json({'task': task.to_dict()})
    return 0


def _task_ready(args: argparse.Namespace) -> int:
    container = _ctx(args)
    tasks = container.engine.ready_tasks(args.project_id)
    container.close()
    if args.json:
        _emit_json({'tasks': [t.to_dict() for t in tasks]})
        return 0
    table = Table(title="Ready tasks")
    table.add_column("ID", style="cyan")
    table.add_column("P", justify="right")
    table.add_column("Status")
    table.add_column("Title")
    for task in tasks:
        table.add_row(task.id, str(task.priority), task.status.value, task.title)
    Console().print(table)
    return 0


def _webhook_add(args: argparse.Namespace) -> int:
    container = _ctx(args)
    try:
        webhook = container.engine.create_webhook(
            args.url,
            args.events,
            secret=args.secret,
            name=args.name,
        )
    except FluxError as exc:
        container.close()
        sys.stderr.write(str(exc) + '\n')
        return 1
    container.close()
    _emit_json({'webhook': webhook.to_public_dict()})
    return 0


def _webhook_list(args: argparse.Namespace) -> int:
    container = _ctx(args)
    webhooks = [w.to_public_dict() for w in container.engine.list_webhooks()]
    container.close()
    _emit_json({'webhooks': webhooks})
    return 0


def _webhook_test(args: argparse.Namespace) -> int:
    container = _ctx(args)
    try:
        delivery = container.dispatcher.test_delivery(args.webhook_id)
    except FluxError as exc:
        sys.stderr.write(str(exc) + '\n')
        return 1
    except concurrent.futures.TimeoutError:
        sys.stderr.write(f"Test delivery to {args.webhook_id} timed out\n")
        return 1
    finally:
        container.close()
    _emit_json({'delivery': delivery.to_dict()})
    return 0 if delivery.outcome.value == 'success' else 2


def _webhook_deliveries(args: argparse.Namespace) -> int:
    container = _ctx(args)
    deliveries = [d.to_dict() for d in container.engine.list_deliveries(args.webhook_id, limit=args.limit)]
    container.close()
    _emit_json({'deliveries': deliveries})
    return 0


def _server(args: argparse.Namespace) -> int:
    try:
        import uvicorn
    except ImportError:
        sys.stderr.write("Install server extras: pip install 'flux-board[server]'\n")
        return 1

    app = create_app(project_dir=_resolve_project_dir(args.project_dir))
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Flux board CLI')
    parser.add_argument('--project-dir', default=None, help='Directory holding .flux/ (default: current working directory)')
    parser.add_argument('--log-level', default=None, help='Override log level (default: config or INFO)')
    subparsers = parser.add_subparsers(dest='command', required=True)

    server = subparsers.add_parser('server', help='Start the board web server')
    server.add_argument('--host', default='127.0.0.1')
    server.add_argument('--port', default=8000, type=int)
    server.set_defaults(func=_server)

    project = subparsers.add_parser('project', help='Manage projects')
    project_sub = project.add_subparsers(dest='project_cmd', required=True)
    pcreate = project_sub.add_parser('create', help='Create a project')
    pcreate.add_argument('name')
    pcreate.add_argument('--description', default=None)
    pcreate.set_defaults(func=_project_create)
    plist = project_sub.add_parser('list', help='List projects with stats')
    plist.set_defaults(func=_project_list)
    pstats = project_sub.add_parser('stats', help='Show task counts for a project')
    pstats.add_argument('project_id')
    pstats.add_argument('--json', action='store_true')
    pstats.set_defaults(func=_project_stats)
    pclean = project_sub.add_parser('cleanup', help='Archive done tasks and delete empty epics')
    pclean.add_argument('project_id')
    pclean.add_argument('--keep-tasks', action='store_true', help='Do not archive done tasks')
    pclean.add_argument('--keep-epics', action='store_true', help='Do not delete empty epics')
    pclean.set_defaults(func=_project_cleanup)

    task = subparsers.add_parser('task', help='Manage tasks')
    task_sub = task.add_subparsers(dest='task_cmd', required=True)
    tcreate = task_sub.add_parser('create', help='Create a task')
    tcreate.add_argument('project_id')
    tcreate.add_argument('title')
    tcreate.add_argument('--epic-id', default=None)
    tcreate.add_argument('--notes', default=None)
    tcreate.add_argument('--priority', default=2, type=int, choices=list(PRIORITIES))
    tcreate.add_argument('--depends-on', nargs='*', default=None)
    tcreate.set_defaults(func=_task_create)
    tlist = task_sub.add_parser('list', help='List tasks of a project')
    tlist.add_argument('project_id')
    tlist.add_argument('--status', default=None)
    tlist.add_argument('--all', action='store_true', help='Include archived tasks')
    tlist.set_defaults(func=_task_list)
    tstatus = task_sub.add_parser('status', help='Change a task status')
    tstatus.add_argument('task_id')
    tstatus.add_argument('status', choices=['todo', 'in_progress', 'done'])
    tstatus.set_defaults(func=_task_status)
    tready = task_sub.add_parser('ready', help='List unblocked tasks by priority')
    tready.add_argument('--project-id', default=None)
    tready.add_argument('--json', action='store_true')
    tready.set_defaults(func=_task_ready)

    webhook = subparsers.add_parser('webhook', help='Manage webhook subscriptions')
    webhook_sub = webhook.add_subparsers(dest='webhook_cmd', required=True)
    wadd = webhook_sub.add_parser('add', help='Subscribe a URL to events')
    wadd.add_argument('url')
    wadd.add_argument('--events', nargs='+', default=['*'])
    wadd.add_argument('--secret', default=None)
    wadd.add_argument('--name', default=None)
    wadd.set_defaults(func=_webhook_add)
    wlist = webhook_sub.add_parser('list', help='List webhooks')
    wlist.set_defaults(func=_webhook_list)
    wtest = webhook_sub.add_parser('test', help='Send a single test delivery')
    wtest.add_argument('webhook_id')
    wtest.set_defaults(func=_webhook_test)
    wdel = webhook_sub.add_parser('deliveries', help='Show delivery history')
    wdel.add_argument('webhook_id')
    wdel.add_argument('--limit', default=20, type=int)
    wdel.set_defaults(func=_webhook_deliveries)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    level = args.log_level or load_settings(_resolve_project_dir(args.project_dir)).log_level
    configure_logging(level)
    handler = getattr(args, 'func', None)
    if handler is None:
        parser.print_help()
        return 1
    return int(handler(args) or 0)


if __name__ == '__main__':
    raise SystemExit(main())
