"""Persistence operations for agents, tasks and agent logs."""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from minion.orchestrator.models import Agent, AgentStatus, Task

from .models.agent import AgentModel
from .models.task import AgentLogModel, TaskModel

logger = logging.getLogger(__name__)


class Repository:
    """Durable record of agents, tasks and logs."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def save_agent(self, agent: Agent) -> None:
        async with self.session_factory() as session:
            await session.merge(AgentModel(
                id=agent.id,
                name=agent.name,
                status=agent.status.value,
                workspace_path=str(agent.workspace_path),
                branch_name=agent.branch_name,
                current_task_id=agent.current_task,
                created_at=agent.created_at,
                last_activity=agent.last_activity,
            ))
            await session.commit()

    async def update_agent_status(
        self,
        agent_id: str,
        status: AgentStatus,
        last_activity: datetime,
        current_task_id: Optional[str] = None
    ) -> None:
        values = {"status": status.value, "last_activity": last_activity}
        if current_task_id is not None:
            values["current_task_id"] = current_task_id

        async with self.session_factory() as session:
            await session.execute(
                update(AgentModel).where(AgentModel.id == agent_id).values(**values)
            )
            await session.commit()

    async def save_task(self, task: Task) -> None:
        async with self.session_factory() as session:
            await session.merge(TaskModel(
                id=task.id,
                agent_id=task.agent_id,
                description=task.description,
                context=task.context,
                status=task.status.value,
                created_at=task.created_at,
                started_at=task.started_at,
                completed_at=task.completed_at,
                output=task.output,
                error=task.error,
            ))
            await session.commit()

    async def update_task_status(self, task: Task) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(TaskModel)
                .where(TaskModel.id == task.id)
                .values(
                    status=task.status.value,
                    started_at=task.started_at,
                    completed_at=task.completed_at,
                    output=task.output,
                    error=task.error,
                )
            )
            await session.commit()

    async def append_log(
        self,
        agent_id: str,
        message: str,
        timestamp: datetime,
        level: str = "info",
        task_id: Optional[str] = None
    ) -> None:
        async with self.session_factory() as session:
            session.add(AgentLogModel(
                agent_id=agent_id,
                task_id=task_id,
                level=level,
                message=message,
                timestamp=timestamp,
            ))
            await session.commit()

    async def delete_agent(self, agent_id: str) -> None:
        """Delete an agent together with its tasks and logs."""
        async with self.session_factory() as session:
            await session.execute(delete(AgentLogModel).where(AgentLogModel.agent_id == agent_id))
            await session.execute(delete(TaskModel).where(TaskModel.agent_id == agent_id))
            await session.execute(delete(AgentModel).where(AgentModel.id == agent_id))
            await session.commit()

    async def get_agent(self, agent_id: str) -> Optional[AgentModel]:
        async with self.session_factory() as session:
            return await session.get(AgentModel, agent_id)

    async def list_tasks(self, agent_id: str) -> list[TaskModel]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(TaskModel)
                .where(TaskModel.agent_id == agent_id)
                .order_by(TaskModel.created_at)
            )
            return list(result.scalars())

    async def list_logs(self, agent_id: str) -> list[AgentLogModel]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(AgentLogModel)
                .where(AgentLogModel.agent_id == agent_id)
                .order_by(AgentLogModel.id)
            )
            return list(result.scalars())
