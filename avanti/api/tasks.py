from typing import List
from fastapi import APIRouter, HTTPException, Depends, Query
from sqlalchemy.orm import Session
from ..database import get_db
from ..dependencies import get_current_user, require_agent_or_admin
from ..models import Task, User
from ..schemas import TaskCreate, TaskStatusUpdate, TaskOut, TaskTotalOut, TaskTimeSummary
from ..services import task_sessions as ledger
from ..sse import sse_manager, task_room

router = APIRouter(prefix="/api/tasks", tags=["tasks-api"])

def _get_task_or_404(db: Session, task_id: int):
    task = db.query(Task).filter(Task.id == task_id).first()
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    return task

@router.post("", response_model=TaskOut, status_code=201)
async def create_task(
    payload: TaskCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_agent_or_admin)
):
    task = Task(title=payload.title, status=payload.status, created_by_id=current_user.id)
    db.add(task)
    db.commit()
    db.refresh(task)
    return task

@router.get("/time-summary", response_model=List[TaskTimeSummary])
async def get_task_time_summaries(
    task_ids: List[int] = Query(default=[]),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    return ledger.get_time_summaries(db, task_ids)

@router.get("/{task_id}", response_model=TaskOut)
async def get_task(task_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    return _get_task_or_404(db, task_id)

@router.patch("/{task_id}/status", response_model=TaskOut)
async def update_task_status(
    task_id: int,
    payload: TaskStatusUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    task = _get_task_or_404(db, task_id)
    previous_status = task.status
    task.status = payload.status
    db.commit()
    db.refresh(task)

    # Viewers of the task stop or resume their timers from this
    if previous_status != task.status:
        await sse_manager.broadcast_to_room(task_room(task.id), {
            "type": "task_status_changed",
            "task_id": task.id,
            "status": task.status
        })
    return task

@router.get("/{task_id}/total-duration", response_model=TaskTotalOut)
async def get_task_total_duration(task_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    _get_task_or_404(db, task_id)
    total = ledger.refresh_task_total(db, task_id)
    return {"task_id": task_id, "total_duration_seconds": total}
