"""
Task session ledger queries.

Shared by the REST endpoints and the in-process ledger backend so both apply
the same rules: a session is closed exactly once, sub-second sessions are
deleted instead of stored, and every write refreshes the cached task total.
"""
import logging
from collections import defaultdict
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models import Task, TaskSession, User
from ..utils.datetime_utils import compute_duration_seconds, to_naive_utc, utcnow, sum_durations

logger = logging.getLogger(__name__)

# Sessions shorter than this are treated as accidental opens
MIN_SESSION_SECONDS = 1


class LedgerError(Exception):
    """Base class for ledger rule violations"""

class NotFoundError(LedgerError):
    pass

class SessionClosedError(LedgerError):
    """Raised when a closed (immutable) session would be modified"""


def create_session(db: Session, task_id, user_id, start_time=None):
    task = db.query(Task).filter(Task.id == task_id).first()
    if not task:
        raise NotFoundError(f"Task {task_id} not found")
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise NotFoundError(f"User {user_id} not found")

    session = TaskSession(
        task_id=task_id,
        user_id=user_id,
        start_time=to_naive_utc(start_time or utcnow())
    )
    db.add(session)
    db.commit()
    db.refresh(session)
    logger.info(f"Opened session {session.id} for task {task_id}, user {user_id}")
    return session


def get_session(db: Session, session_id):
    session = db.query(TaskSession).filter(TaskSession.id == session_id).first()
    if not session:
        raise NotFoundError(f"Session {session_id} not found")
    return session


def list_sessions(db: Session, task_id=None, user_id=None, status=None):
    query = db.query(TaskSession)
    if task_id is not None:
        query = query.filter(TaskSession.task_id == task_id)
    if user_id is not None:
        query = query.filter(TaskSession.user_id == user_id)
    if status == "open":
        query = query.filter(TaskSession.end_time.is_(None))
    elif status == "closed":
        query = query.filter(TaskSession.end_time.isnot(None))
    # Newest first, so the first open row is the one to resume
    return query.order_by(TaskSession.start_time.desc()).all()


def _open_session(db: Session, session_id):
    session = get_session(db, session_id)
    if not session.is_open:
        raise SessionClosedError(f"Session {session_id} is already closed")
    return session


def _measured_duration(session, end_time, reported=None):
    """Duration from the stored start, the client figure is only checked against it"""
    duration = compute_duration_seconds(session.start_time, end_time)
    if reported is not None and int(reported) != duration:
        logger.warning(f"Session {session.id} reported {reported}s, recording {duration}s from its start time")
    return duration


def close_session(db: Session, session_id, end_time, duration_seconds=None):
    session = _open_session(db, session_id)
    duration = _measured_duration(session, end_time, duration_seconds)

    session.end_time = to_naive_utc(end_time)
    session.duration_seconds = duration
    db.commit()
    db.refresh(session)
    logger.info(f"Closed session {session_id} after {session.duration_seconds}s")
    refresh_task_total(db, session.task_id)
    return session


def delete_session(db: Session, session_id):
    session = get_session(db, session_id)
    if not session.is_open:
        raise SessionClosedError(f"Session {session_id} is closed and cannot be deleted")
    task_id = session.task_id
    db.delete(session)
    db.commit()
    logger.info(f"Deleted session {session_id} of task {task_id}")
    refresh_task_total(db, task_id)
    return task_id


def close_or_discard(db: Session, session_id, end_time, duration_seconds=None):
    """
    Close a session, or delete it when it lasted less than a second.
    Returns the closed session, or None when it was discarded.
    """
    session = _open_session(db, session_id)
    if _measured_duration(session, end_time, duration_seconds) < MIN_SESSION_SECONDS:
        delete_session(db, session_id)
        return None
    return close_session(db, session_id, end_time)


def calculate_task_total_duration(db: Session, task_id):
    """Sum of closed session durations for a task across all users"""
    rows = db.query(TaskSession.duration_seconds).filter(
        TaskSession.task_id == task_id,
        TaskSession.duration_seconds.isnot(None)
    ).all()
    return sum_durations(row[0] for row in rows)


def refresh_task_total(db: Session, task_id):
    """Recompute the task total and store it on the task for fast reads"""
    total = calculate_task_total_duration(db, task_id)
    task = db.query(Task).filter(Task.id == task_id).first()
    if task and task.total_duration_seconds != total:
        task.total_duration_seconds = total
        db.commit()
    return total


def get_time_summaries(db: Session, task_ids):
    """Per task and user: number of closed sessions and their summed time"""
    if not task_ids:
        return []

    rows = db.query(
        TaskSession.task_id,
        TaskSession.user_id,
        func.count(TaskSession.id),
        func.sum(TaskSession.duration_seconds)
    ).filter(
        TaskSession.task_id.in_(task_ids),
        TaskSession.duration_seconds.isnot(None)
    ).group_by(TaskSession.task_id, TaskSession.user_id).all()

    summaries = defaultdict(dict)
    for task_id, user_id, session_count, total_seconds in rows:
        total_seconds = int(total_seconds or 0)
        summaries[task_id][user_id] = {
            "task_id": task_id,
            "user_id": user_id,
            "session_count": session_count,
            "total_seconds": total_seconds,
            "total_hours": round(total_seconds / 3600, 2)
        }

    return [
        summaries[task_id][user_id]
        for task_id in sorted(summaries)
        for user_id in sorted(summaries[task_id])
    ]
