from functools import lru_cache

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from ..auth import require_token
from ..errors import QueueError, StoreUnavailableError
from ..models import CreateTaskRequest, HealthResponse
from ..storage.repo import TaskQueue
from ..storage.schema import Task

router = APIRouter()


@lru_cache(maxsize=1)
def get_queue() -> TaskQueue:
    return TaskQueue()


def _store_error(exc: QueueError) -> HTTPException:
    if isinstance(exc, StoreUnavailableError):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


@router.post("/tasks", response_model=Task, status_code=201, response_model_exclude_none=True)
def create_task(payload: CreateTaskRequest, queue: TaskQueue = Depends(get_queue), _=Depends(require_token)):
    try:
        return queue.push(payload.type, payload.payload, max_retry=payload.max_retry)
    except QueueError as exc:
        raise _store_error(exc) from exc


@router.get("/tasks", response_model=list[Task], response_model_exclude_none=True)
def list_tasks(queue: TaskQueue = Depends(get_queue), _=Depends(require_token)):
    try:
        return queue.list()
    except QueueError as exc:
        raise _store_error(exc) from exc


@router.get("/tasks/{task_id}", response_model=Task, response_model_exclude_none=True)
def get_task(task_id: str, queue: TaskQueue = Depends(get_queue), _=Depends(require_token)):
    try:
        task = queue.get(task_id)
    except QueueError as exc:
        raise _store_error(exc) from exc
    if task is None:
        raise HTTPException(status_code=404, detail="task not found")
    return task


@router.delete("/tasks/{task_id}", status_code=204)
def delete_task(task_id: str, queue: TaskQueue = Depends(get_queue), _=Depends(require_token)):
    try:
        deleted = queue.delete(task_id)
    except QueueError as exc:
        raise _store_error(exc) from exc
    if not deleted:
        raise HTTPException(status_code=404, detail="task not found")
    return Response(status_code=204)


@router.get("/health", response_model=HealthResponse)
def health(request: Request, queue: TaskQueue = Depends(get_queue)):
    pool = getattr(request.app.state, "pool", None)
    stats = pool.stats.snapshot() if pool is not None else {}
    running = pool is not None and pool.running
    try:
        pending = queue.pending_count()
    except StoreUnavailableError:
        return HealthResponse(status="degraded", workers_running=running, stats=stats)
    return HealthResponse(status="ok", pending=pending, workers_running=running, stats=stats)
