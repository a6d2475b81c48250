from typing import List, Literal, Optional
from fastapi import APIRouter, HTTPException, Depends, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError
import logging

from ..database import get_db
from ..dependencies import get_current_user
from ..models import User
from ..schemas import TaskSessionCreate, TaskSessionClose, TaskSessionOut, EndSessionBeacon, EndSessionResult
from ..services import task_sessions as ledger
from ..sse import broadcast_session_change, SESSION_CREATED, SESSION_CLOSED, SESSION_DELETED

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["task-sessions-api"])

def _ensure_owner(session, current_user: User):
    # Writers only ever touch their own rows
    if session.user_id != current_user.id and not current_user.is_admin:
        raise HTTPException(status_code=403, detail="Session belongs to another user")

def _load_session(db: Session, session_id: str):
    try:
        return ledger.get_session(db, session_id)
    except ledger.NotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")

@router.post("/task-sessions", response_model=TaskSessionOut, status_code=201)
async def create_task_session(
    payload: TaskSessionCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    user_id = payload.user_id or current_user.id
    if user_id != current_user.id and not current_user.is_admin:
        raise HTTPException(status_code=403, detail="Cannot open sessions for another user")

    try:
        session = ledger.create_session(db, payload.task_id, user_id, payload.start_time)
    except ledger.NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    await broadcast_session_change(session.task_id, SESSION_CREATED, session.id, session.user_id)
    return session

@router.get("/task-sessions", response_model=List[TaskSessionOut])
async def list_task_sessions(
    task_id: Optional[int] = None,
    user_id: Optional[int] = None,
    status: Optional[Literal["open", "closed"]] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    return ledger.list_sessions(db, task_id=task_id, user_id=user_id, status=status)

@router.get("/task-sessions/{session_id}", response_model=TaskSessionOut)
async def get_task_session(
    session_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    return _load_session(db, session_id)

@router.patch(
    "/task-sessions/{session_id}",
    response_model=TaskSessionOut,
    responses={204: {"description": "Session lasted under a second and was discarded"}}
)
async def close_task_session(
    session_id: str,
    payload: TaskSessionClose,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    session = _load_session(db, session_id)
    _ensure_owner(session, current_user)

    task_id, user_id = session.task_id, session.user_id
    try:
        closed = ledger.close_or_discard(db, session_id, payload.end_time, payload.duration_seconds)
    except ledger.SessionClosedError as e:
        raise HTTPException(status_code=409, detail=str(e))

    if closed is None:
        # Shorter than a second: nothing worth keeping
        await broadcast_session_change(task_id, SESSION_DELETED, session_id, user_id)
        return Response(status_code=204)

    await broadcast_session_change(task_id, SESSION_CLOSED, closed.id, closed.user_id)
    return closed

@router.delete("/task-sessions/{session_id}")
async def delete_task_session(
    session_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    session = _load_session(db, session_id)
    _ensure_owner(session, current_user)
    user_id = session.user_id

    try:
        task_id = ledger.delete_session(db, session_id)
    except ledger.SessionClosedError as e:
        raise HTTPException(status_code=409, detail=str(e))

    await broadcast_session_change(task_id, SESSION_DELETED, session_id, user_id)
    return {"deleted": session_id, "task_id": task_id}

@router.post("/end-session", response_model=EndSessionResult)
async def end_session_beacon(
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """
    Close a session from a client that is going away.

    Clients call this with a blocking request during unload, so it answers in
    one round trip: the session is closed (or dropped if it lasted under a
    second) and the task total is refreshed before responding.
    """
    try:
        beacon = EndSessionBeacon(**(await request.json()))
    except (ValueError, TypeError):
        return JSONResponse(status_code=400, content={
            "success": False,
            "message": "Missing required fields"
        })

    try:
        session = ledger.get_session(db, beacon.sessionId)
    except ledger.NotFoundError:
        return JSONResponse(status_code=404, content={
            "success": False,
            "message": "Session not found"
        })

    _ensure_owner(session, current_user)
    if session.task_id != beacon.taskId:
        return JSONResponse(status_code=400, content={
            "success": False,
            "message": "Session does not belong to task"
        })

    user_id = session.user_id
    try:
        closed = ledger.close_or_discard(db, beacon.sessionId, beacon.endTime, beacon.durationSeconds)
    except ledger.SessionClosedError:
        return JSONResponse(status_code=409, content={
            "success": False,
            "message": "Session already closed"
        })
    except SQLAlchemyError as e:
        logger.error(f"Error in end-session beacon for {beacon.sessionId}: {e}")
        db.rollback()
        return JSONResponse(status_code=500, content={
            "success": False,
            "message": "Failed to update session"
        })

    if closed is None:
        await broadcast_session_change(beacon.taskId, SESSION_DELETED, beacon.sessionId, user_id)
        return EndSessionResult(success=True, message="Session discarded", discarded=True)

    await broadcast_session_change(beacon.taskId, SESSION_CLOSED, beacon.sessionId, user_id)
    return EndSessionResult(success=True, message="Session ended successfully")
