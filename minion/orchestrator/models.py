"""Agent and task records owned by the agent manager."""

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AgentStatus(str, Enum):
    """Agent lifecycle status."""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    STOPPED = "stopped"


class TaskStatus(str, Enum):
    """Task execution status."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_final(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.ERROR)


class Agent(BaseModel):
    """A worker bound to one isolated workspace."""
    id: str
    name: str
    status: AgentStatus = AgentStatus.IDLE
    workspace_path: Path
    branch_name: str
    current_task: Optional[str] = None  # task id
    created_at: datetime = Field(default_factory=utcnow)
    last_activity: Optional[datetime] = None


class Task(BaseModel):
    """One unit of work submitted to an agent."""
    id: str
    agent_id: str
    description: str
    context: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    output: Optional[str] = None
    error: Optional[str] = None


class TaskRequest(BaseModel):
    """Caller input for a task assignment."""
    description: str
    context: Optional[str] = None
