"""Typed lifecycle events published by the agent manager."""

from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field

from minion.orchestrator.models import Agent, AgentStatus, Task, TaskStatus, utcnow


class BaseEvent(BaseModel):
    """Fields common to every event."""
    agent_id: str
    timestamp: datetime = Field(default_factory=utcnow)


class AgentCreated(BaseEvent):
    kind: Literal["agent_created"] = "agent_created"
    agent: Agent


class AgentStatusChanged(BaseEvent):
    kind: Literal["agent_status_changed"] = "agent_status_changed"
    status: AgentStatus
    current_task: Optional[str] = None


class AgentStopped(BaseEvent):
    kind: Literal["agent_stopped"] = "agent_stopped"


class AgentRemoved(BaseEvent):
    kind: Literal["agent_removed"] = "agent_removed"


class TaskStatusChanged(BaseEvent):
    kind: Literal["task_status_changed"] = "task_status_changed"
    task_id: str
    status: TaskStatus
    task: Task  # snapshot after the transition


class TaskCompleted(BaseEvent):
    kind: Literal["task_completed"] = "task_completed"
    task_id: str
    output: str


class TaskErrored(BaseEvent):
    kind: Literal["task_error"] = "task_error"
    task_id: str
    error: str


class AgentLog(BaseEvent):
    """One line of agent output."""
    kind: Literal["agent_log"] = "agent_log"
    task_id: Optional[str] = None
    level: str = "info"
    message: str


Event = Annotated[
    Union[
        AgentCreated,
        AgentStatusChanged,
        AgentStopped,
        AgentRemoved,
        TaskStatusChanged,
        TaskCompleted,
        TaskErrored,
        AgentLog,
    ],
    Field(discriminator="kind"),
]

EVENT_KINDS = frozenset({
    "agent_created",
    "agent_status_changed",
    "agent_stopped",
    "agent_removed",
    "task_status_changed",
    "task_completed",
    "task_error",
    "agent_log",
})
