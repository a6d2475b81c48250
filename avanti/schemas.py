from pydantic import BaseModel, Field
from typing import Optional, Literal
from datetime import datetime

TaskStatus = Literal['new', 'in_progress', 'followup', 'completed']

# User schemas
class UserCreate(BaseModel):
    username: str
    password: str
    full_name: Optional[str] = None
    role: Literal['admin', 'agent', 'customer'] = 'agent'

class UserOut(BaseModel):
    id: int
    username: str
    full_name: Optional[str]
    role: str

    class Config:
        from_attributes = True

class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"

# Task schemas
class TaskCreate(BaseModel):
    title: str
    status: TaskStatus = 'new'

class TaskStatusUpdate(BaseModel):
    status: TaskStatus

class TaskOut(BaseModel):
    id: int
    title: str
    status: str
    total_duration_seconds: Optional[int]
    created_at: datetime

    class Config:
        from_attributes = True

class TaskTotalOut(BaseModel):
    task_id: int
    total_duration_seconds: int

class TaskTimeSummary(BaseModel):
    task_id: int
    user_id: int
    session_count: int
    total_seconds: int
    total_hours: float

# Task session schemas
class TaskSessionCreate(BaseModel):
    task_id: int
    user_id: Optional[int] = None  # Defaults to the authenticated user
    start_time: Optional[datetime] = None  # Defaults to server time

class TaskSessionClose(BaseModel):
    end_time: datetime
    # Checked against the stored start time, which decides what is recorded
    duration_seconds: Optional[int] = Field(default=None, ge=0)

class TaskSessionOut(BaseModel):
    id: str
    task_id: int
    user_id: int
    start_time: datetime
    end_time: Optional[datetime] = None
    duration_seconds: Optional[int] = None

    class Config:
        from_attributes = True

    @property
    def is_open(self):
        return self.end_time is None

class EndSessionBeacon(BaseModel):
    """Payload of the blocking close request sent while a client is going away"""
    sessionId: str
    taskId: int
    endTime: datetime
    durationSeconds: int

class EndSessionResult(BaseModel):
    success: bool
    message: str
    discarded: bool = False
