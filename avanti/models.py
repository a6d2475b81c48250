from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime
import uuid

from .database import Base

# Only these statuses accumulate working time
TRACKED_STATUSES = frozenset({'new', 'in_progress'})

def generate_session_id():
    return uuid.uuid4().hex

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String, unique=True, index=True)
    hashed_password = Column(String)
    full_name = Column(String)
    role = Column(String, default="agent")  # admin, agent, customer
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    @property
    def is_admin(self):
        return self.role == "admin"

class Task(Base):
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False)
    status = Column(String, default="new", nullable=False)
    total_duration_seconds = Column(Integer)  # Cached sum of closed session durations
    created_by_id = Column(Integer, ForeignKey("users.id"))
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    created_by = relationship("User")
    sessions = relationship("TaskSession", back_populates="task", cascade="all, delete-orphan")

class TaskSession(Base):
    __tablename__ = "task_sessions"

    id = Column(String, primary_key=True, default=generate_session_id)
    task_id = Column(Integer, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime)
    duration_seconds = Column(Integer)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    task = relationship("Task", back_populates="sessions")
    user = relationship("User")

    @property
    def is_open(self):
        return self.end_time is None
