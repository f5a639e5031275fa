"""Best-effort persistence of lifecycle events."""

import asyncio
import logging
from typing import Optional

from minion.events import (
    AgentCreated,
    AgentLog,
    AgentRemoved,
    AgentStatusChanged,
    BaseEvent,
    EventBus,
    TaskStatusChanged,
)
from minion.orchestrator.models import TaskStatus

from .repository import Repository

logger = logging.getLogger(__name__)


class PersistenceSubscriber:
    """
    Mirrors agent and task state into the repository.

    Runs as its own consumer of the event bus, so a slow or failing database
    never holds up the agent manager. Failures are logged and the event is
    skipped.
    """

    def __init__(self, repository: Repository, events: EventBus):
        self.repository = repository
        self.subscription = events.subscribe()
        self._task: Optional[asyncio.Task] = None

    def start(self) -> asyncio.Task:
        self._task = asyncio.create_task(self.run(), name="minion-persistence")
        return self._task

    async def run(self) -> None:
        async for event in self.subscription:
            await self.handle(event)

    async def stop(self) -> None:
        """Stop after writing every event queued so far."""
        self.subscription.close()
        if self._task is not None:
            await self._task

    async def handle(self, event: BaseEvent) -> None:
        try:
            if isinstance(event, AgentCreated):
                await self.repository.save_agent(event.agent)
            elif isinstance(event, AgentStatusChanged):
                await self.repository.update_agent_status(
                    event.agent_id,
                    event.status,
                    event.timestamp,
                    current_task_id=event.current_task,
                )
            elif isinstance(event, TaskStatusChanged):
                if event.status == TaskStatus.PENDING:
                    await self.repository.save_task(event.task)
                else:
                    await self.repository.update_task_status(event.task)
            elif isinstance(event, AgentLog):
                await self.repository.append_log(
                    event.agent_id,
                    event.message,
                    event.timestamp,
                    level=event.level,
                    task_id=event.task_id,
                )
            elif isinstance(event, AgentRemoved):
                await self.repository.delete_agent(event.agent_id)
        except Exception as e:
            logger.error(
                f"Failed to persist {event.kind} for agent {event.agent_id}: {e}",
                exc_info=True
            )
