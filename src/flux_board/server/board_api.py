"""Board REST endpoints: projects, epics and tasks.

Mounted under ``/api`` by :func:`flux_board.server.api.create_app`.
Validation failures surface as 400 through the app's exception handlers;
unknown ids are 404.
"""

from __future__ import annotations

from typing import Any, Callable, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field

from ..board.engine import BoardEngine
from ..board.model import DEFAULT_PRIORITY


# ---------------------------------------------------------------------------
# Pydantic request / response models
# ---------------------------------------------------------------------------

class _Patch(BaseModel):
    """Partial update body; unknown keys are passed through and rejected by the engine."""

    model_config = ConfigDict(extra="allow")


class CreateProjectRequest(BaseModel):
    name: str
    description: Optional[str] = None


class UpdateProjectRequest(_Patch):
    name: Optional[str] = None
    description: Optional[str] = None


class CleanupRequest(BaseModel):
    archive_tasks: bool = True
    delete_empty_epics: bool = True


class CreateEpicRequest(BaseModel):
    title: str
    notes: Optional[str] = None
    status: str = "todo"


class UpdateEpicRequest(_Patch):
    title: Optional[str] = None
    notes: Optional[str] = None
    status: Optional[str] = None


class CreateTaskRequest(BaseModel):
    title: str
    epic_id: Optional[str] = None
    notes: Optional[str] = None
    priority: int = DEFAULT_PRIORITY
    status: str = "todo"
    depends_on: list[str] = Field(default_factory=list)
    id: Optional[str] = None


class UpdateTaskRequest(_Patch):
    title: Optional[str] = None
    epic_id: Optional[str] = None
    notes: Optional[str] = None
    priority: Optional[int] = None
    status: Optional[str] = None
    depends_on: Optional[list[str]] = None


class ProjectResponse(BaseModel):
    project: dict[str, Any]


class ProjectListResponse(BaseModel):
    projects: list[dict[str, Any]]
    total: int


class EpicResponse(BaseModel):
    epic: dict[str, Any]


class EpicListResponse(BaseModel):
    epics: list[dict[str, Any]]
    total: int


class TaskResponse(BaseModel):
    task: dict[str, Any]


class TaskListResponse(BaseModel):
    tasks: list[dict[str, Any]]
    total: int


# ---------------------------------------------------------------------------
# Router factory
# ---------------------------------------------------------------------------

def create_board_router(get_engine: Callable[[], BoardEngine]) -> APIRouter:
    """Create the board router.

    Parameters
    ----------
    get_engine:
        Zero-argument callable returning the app's :class:`BoardEngine`.
    """
    router = APIRouter(prefix="/api", tags=["board"])

    def _project_view(engine: BoardEngine, project_id: str) -> dict[str, Any]:
        project = engine.get_project(project_id)
        if project is None:
            raise HTTPException(status_code=404, detail=f"Project {project_id} not found")
        data = project.to_dict()
        data["stats"] = engine.project_stats(project_id)
        return data

    def _require_project(engine: BoardEngine, project_id: str) -> None:
        if engine.get_project(project_id) is None:
            raise HTTPException(status_code=404, detail=f"Project {project_id} not found")

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    @router.get("/projects", response_model=ProjectListResponse)
    async def list_projects() -> ProjectListResponse:
        engine = get_engine()
        data = []
        for project in engine.list_projects():
            item = project.to_dict()
            item["stats"] = engine.project_stats(project.id)
            data.append(item)
        return ProjectListResponse(projects=data, total=len(data))

    @router.post("/projects", response_model=ProjectResponse, status_code=201)
    async def create_project(body: CreateProjectRequest) -> ProjectResponse:
        project = get_engine().create_project(body.name, body.description)
        return ProjectResponse(project=project.to_dict())

    @router.get("/projects/{project_id}", response_model=ProjectResponse)
    async def get_project(project_id: str) -> ProjectResponse:
        return ProjectResponse(project=_project_view(get_engine(), project_id))

    @router.patch("/projects/{project_id}", response_model=ProjectResponse)
    async def update_project(project_id: str, body: UpdateProjectRequest) -> ProjectResponse:
        project = get_engine().update_project(project_id, body.model_dump(exclude_unset=True))
        if project is None:
            raise HTTPException(status_code=404, detail=f"Project {project_id} not found")
        return ProjectResponse(project=project.to_dict())

    @router.delete("/projects/{project_id}")
    async def delete_project(project_id: str) -> dict[str, str]:
        if not get_engine().delete_project(project_id):
            raise HTTPException(status_code=404, detail=f"Project {project_id} not found")
        return {"status": "deleted"}

    @router.post("/projects/{project_id}/cleanup")
    async def cleanup_project(project_id: str, body: Optional[CleanupRequest] = None) -> dict[str, int]:
        body = body or CleanupRequest()
        result = get_engine().cleanup_project(
            project_id,
            archive_tasks=body.archive_tasks,
            delete_empty_epics=body.delete_empty_epics,
        )
        if result is None:
            raise HTTPException(status_code=404, detail=f"Project {project_id} not found")
        return result

    # ------------------------------------------------------------------
    # Epics
    # ------------------------------------------------------------------

    @router.get("/projects/{project_id}/epics", response_model=EpicListResponse)
    async def list_epics(project_id: str) -> EpicListResponse:
        engine = get_engine()
        _require_project(engine, project_id)
        data = [e.to_dict() for e in engine.list_epics(project_id)]
        return EpicListResponse(epics=data, total=len(data))

    @router.post("/projects/{project_id}/epics", response_model=EpicResponse, status_code=201)
    async def create_epic(project_id: str, body: CreateEpicRequest) -> EpicResponse:
        engine = get_engine()
        _require_project(engine, project_id)
        epic = engine.create_epic(project_id, body.title, notes=body.notes, status=body.status)
        return EpicResponse(epic=epic.to_dict())

    @router.get("/epics/{epic_id}", response_model=EpicResponse)
    async def get_epic(epic_id: str) -> EpicResponse:
        epic = get_engine().get_epic(epic_id)
        if epic is None:
            raise HTTPException(status_code=404, detail=f"Epic {epic_id} not found")
        return EpicResponse(epic=epic.to_dict())

    @router.patch("/epics/{epic_id}", response_model=EpicResponse)
    async def update_epic(epic_id: str, body: UpdateEpicRequest) -> EpicResponse:
        epic = get_engine().update_epic(epic_id, body.model_dump(exclude_unset=True))
        if epic is None:
            raise HTTPException(status_code=404, detail=f"Epic {epic_id} not found")
        return EpicResponse(epic=epic.to_dict())

    @router.delete("/epics/{epic_id}")
    async def delete_epic(epic_id: str) -> dict[str, str]:
        if not get_engine().delete_epic(epic_id):
            raise HTTPException(status_code=404, detail=f"Epic {epic_id} not found")
        return {"status": "deleted"}

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    @router.get("/projects/{project_id}/tasks", response_model=TaskListResponse)
    async def list_tasks(
        project_id: str,
        include_archived: bool = Query(False),
        status: Optional[str] = Query(None),
        epic_id: Optional[str] = Query(None),
    ) -> TaskListResponse:
        engine = get_engine()
        _require_project(engine, project_id)
        tasks = engine.list_tasks(project_id, include_archived=include_archived, status=status, epic_id=epic_id)
        data = engine.task_views(tasks)
        return TaskListResponse(tasks=data, total=len(data))

    @router.post("/projects/{project_id}/tasks", response_model=TaskResponse, status_code=201)
    async def create_task(project_id: str, body: CreateTaskRequest) -> TaskResponse:
        engine = get_engine()
        _require_project(engine, project_id)
        task = engine.create_task(
            project_id,
            body.title,
            epic_id=body.epic_id,
            notes=body.notes,
            priority=body.priority,
            status=body.status,
            depends_on=body.depends_on,
            task_id=body.id,
        )
        return TaskResponse(task=engine.task_views([task])[0])

    @router.get("/tasks/ready", response_model=TaskListResponse)
    async def ready_tasks(project_id: Optional[str] = Query(None)) -> TaskListResponse:
        engine = get_engine()
        data = engine.task_views(engine.ready_tasks(project_id))
        return TaskListResponse(tasks=data, total=len(data))

    @router.get("/tasks/{task_id}", response_model=TaskResponse)
    async def get_task(task_id: str) -> TaskResponse:
        engine = get_engine()
        task = engine.get_task(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
        return TaskResponse(task=engine.task_views([task])[0])

    @router.patch("/tasks/{task_id}", response_model=TaskResponse)
    async def update_task(task_id: str, body: UpdateTaskRequest) -> TaskResponse:
        engine = get_engine()
        task = engine.update_task(task_id, body.model_dump(exclude_unset=True))
        if task is None:
            raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
        return TaskResponse(task=engine.task_views([task])[0])

    @router.delete("/tasks/{task_id}")
    async def delete_task(task_id: str) -> dict[str, str]:
        if not get_engine().delete_task(task_id):
            raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
        return {"status": "deleted"}

    return router
