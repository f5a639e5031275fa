"""Agent lifecycle manager and task execution pipeline."""

import asyncio
import logging
import re
import uuid
from typing import Optional

from minion.errors import ConflictError, NotFoundError, ValidationError
from minion.events import (
    AgentCreated,
    AgentLog,
    AgentRemoved,
    AgentStatusChanged,
    AgentStopped,
    EventBus,
    TaskCompleted,
    TaskErrored,
    TaskStatusChanged,
)
from minion.git.worktree_manager import WorktreeManager, WorkspaceNotFoundError
from minion.llm.executor import Executor, build_prompt
from minion.orchestrator.models import Agent, AgentStatus, Task, TaskStatus, utcnow
from minion.orchestrator.task_runner import TaskRunner

logger = logging.getLogger(__name__)

AGENT_STOPPED = "Agent stopped"
DEFAULT_BRANCH_PREFIX = "minion/"

_INVALID_REF_CHARS = re.compile(r"[^a-z0-9._-]+")


def derive_branch_name(
    name: str,
    agent_id: str,
    prefix: str = DEFAULT_BRANCH_PREFIX
) -> str:
    """
    Branch name for an agent: normalized name plus a short id suffix.

    The name is lower-cased and whitespace runs become hyphens; characters git
    does not accept in ref names are folded into hyphens as well. The id suffix
    keeps branches unique when several agents share a name.
    """
    slug = re.sub(r"\s+", "-", name.strip().lower())
    slug = _INVALID_REF_CHARS.sub("-", slug).strip("-.")
    slug = re.sub(r"\.{2,}", ".", slug)
    return f"{prefix}{slug or 'agent'}-{agent_id[:8]}"


class AgentManager:
    """
    Owns the agent and task registries and drives their state machines.

    All registry mutation happens on the event loop that runs this manager.
    Task execution is handed to a TaskRunner; the pipeline coroutine and the
    runner's completion callback both finish tasks through ``_finish_task``,
    which ignores any write to a task that already reached a final state.
    """

    def __init__(
        self,
        worktrees: WorktreeManager,
        executor: Executor,
        events: Optional[EventBus] = None,
        runner: Optional[TaskRunner] = None,
        branch_prefix: str = DEFAULT_BRANCH_PREFIX,
        stop_timeout: float = 10.0
    ):
        """
        Initialize agent manager.

        Args:
            worktrees: Workspace isolation layer
            executor: Capability running task prompts
            events: Bus lifecycle events are published on
            runner: Background pool for task execution
            branch_prefix: Prefix of derived agent branch names
            stop_timeout: Seconds stop_agent waits for a cancelled task
        """
        self.worktrees = worktrees
        self.executor = executor
        self.events = events or EventBus()
        self.runner = runner or TaskRunner()
        self.branch_prefix = branch_prefix
        self.stop_timeout = stop_timeout

        self._agents: dict[str, Agent] = {}
        self._tasks: dict[str, Task] = {}
        self._removing: set[str] = set()

    async def create_agent(self, name: str) -> Agent:
        """
        Create an agent with its own worktree and branch.

        The agent is registered only after its workspace exists.

        Raises:
            ValidationError: If ``name`` is empty
            WorkspaceExistsError, GitOperationError: If the workspace cannot
                be created
        """
        if not name or not name.strip():
            raise ValidationError("Agent name is required")

        agent_id = str(uuid.uuid4())
        branch_name = derive_branch_name(name, agent_id, self.branch_prefix)

        workspace_path = await self.worktrees.create_worktree(agent_id, branch_name)

        now = utcnow()
        agent = Agent(
            id=agent_id,
            name=name,
            workspace_path=workspace_path,
            branch_name=branch_name,
            created_at=now,
            last_activity=now,
        )
        self._agents[agent_id] = agent
        logger.info(f"Created agent {name!r} ({agent_id}) on branch {branch_name}")

        self.events.emit(AgentCreated(agent_id=agent_id, agent=agent.model_copy()))
        return agent.model_copy()

    async def assign_task(
        self,
        agent_id: str,
        description: str,
        context: Optional[str] = None
    ) -> Task:
        """
        Record a task and start executing it in the background.

        Returns as soon as the task is recorded; the task is still pending.

        Raises:
            ValidationError: If ``description`` is empty
            AgentNotFoundError: If the agent is unknown
            AgentBusyError: If the agent is already running a task
            AgentRemovingError: If the agent is being removed
        """
        if not description or not description.strip():
            raise ValidationError("Task description is required")

        agent = self._require(agent_id)
        if agent_id in self._removing:
            raise AgentRemovingError(f"Agent {agent_id} is being removed")
        if agent.status == AgentStatus.RUNNING:
            raise AgentBusyError(f"Agent {agent_id} is already running a task")

        task = Task(
            id=str(uuid.uuid4()),
            agent_id=agent_id,
            description=description,
            context=context or None,
        )
        self._tasks[task.id] = task
        agent.current_task = task.id
        self._emit_task_status(task)
        self._set_agent_status(agent, AgentStatus.RUNNING)

        self.runner.submit(
            task.id,
            self._execute_task(agent_id, task),
            on_done=self._on_task_done,
        )
        logger.info(f"Assigned task {task.id} to agent {agent_id}")
        return task.model_copy()

    async def _execute_task(self, agent_id: str, task: Task) -> None:
        try:
            async with self.runner.slot():
                agent = self._agents.get(agent_id)
                if agent is None or task.status.is_final:
                    # stopped or removed while waiting for a slot
                    return
                await self._run_task(agent, task)
        except asyncio.CancelledError:
            if self._finish_task(task, error=AGENT_STOPPED):
                self._settle_agent(agent_id, task.id, AgentStatus.STOPPED)
            raise

    async def _run_task(self, agent: Agent, task: Task) -> None:
        if agent.status != AgentStatus.RUNNING:
            self._set_agent_status(agent, AgentStatus.RUNNING)

        task.status = TaskStatus.RUNNING
        task.started_at = utcnow()
        self._emit_task_status(task)
        self._log(agent.id, task.id, "Task started")

        prompt = build_prompt(task.description, task.context)
        try:
            output = await self.executor.execute(prompt, agent.workspace_path)
        except Exception as e:
            logger.error(f"Task {task.id} failed for agent {agent.id}: {e}")
            if self._finish_task(task, error=str(e) or type(e).__name__):
                self._settle_agent(agent.id, task.id, AgentStatus.ERROR)
            return

        if self._finish_task(task, output=output):
            self._settle_agent(agent.id, task.id, AgentStatus.COMPLETED)

    def _on_task_done(self, task_id: str, future: asyncio.Task) -> None:
        """Runner callback: make sure no task is left unfinished."""
        task = self._tasks.get(task_id)
        if task is None or task.status.is_final:
            return

        if future.cancelled():
            if self._finish_task(task, error=AGENT_STOPPED):
                self._settle_agent(task.agent_id, task_id, AgentStatus.STOPPED)
            return

        error = future.exception()
        message = str(error) if error else "Task ended without a result"
        if self._finish_task(task, error=message):
            self._settle_agent(task.agent_id, task_id, AgentStatus.ERROR)

    def _finish_task(
        self,
        task: Task,
        output: Optional[str] = None,
        error: Optional[str] = None
    ) -> bool:
        """
        Move a task to its final state.

        Returns:
            False if the task was already final (the write is ignored)
        """
        if task.status.is_final:
            logger.debug(f"Ignoring late result for finished task {task.id}")
            return False

        if error is not None:
            task.status = TaskStatus.ERROR
            task.error = error
        else:
            task.status = TaskStatus.COMPLETED
            task.output = output or ""
        task.completed_at = utcnow()

        self._emit_task_status(task)
        if task.status == TaskStatus.COMPLETED:
            self.events.emit(TaskCompleted(
                agent_id=task.agent_id, task_id=task.id, output=task.output
            ))
            self._log(task.agent_id, task.id, "Task completed")
        else:
            self.events.emit(TaskErrored(
                agent_id=task.agent_id, task_id=task.id, error=task.error
            ))
            self._log(task.agent_id, task.id, f"Task failed: {task.error}", level="error")
        return True

    def _settle_agent(self, agent_id: str, task_id: str, status: AgentStatus) -> None:
        """Apply a task outcome to the agent if it is still running that task."""
        agent = self._agents.get(agent_id)
        if (
            agent is not None
            and agent.status == AgentStatus.RUNNING
            and agent.current_task == task_id
        ):
            self._set_agent_status(agent, status)

    async def stop_agent(self, agent_id: str) -> None:
        """
        Stop an agent, cancelling its unfinished task.

        The unfinished task ends in ``error`` with the message "Agent stopped".
        Stopping an already stopped agent re-applies the transition.

        Raises:
            AgentNotFoundError: If the agent is unknown
        """
        agent = self._require(agent_id)
        self._set_agent_status(agent, AgentStatus.STOPPED)

        task = self._tasks.get(agent.current_task) if agent.current_task else None
        if task is not None and not task.status.is_final:
            await self.runner.cancel(task.id, timeout=self.stop_timeout)
            # covers a task cancelled before its coroutine ever ran
            self._finish_task(task, error=AGENT_STOPPED)

        logger.info(f"Stopped agent {agent_id}")
        self.events.emit(AgentStopped(agent_id=agent_id))

    async def remove_agent(self, agent_id: str, force: bool = False) -> None:
        """
        Remove an agent, its workspace and its tasks.

        Raises:
            AgentNotFoundError: If the agent is unknown
            AgentRunningError: If the agent is running and ``force`` is False
            AgentRemovingError: If another removal of the agent is in progress
            GitOperationError: If git refuses to remove the worktree
        """
        agent = self._require(agent_id)
        if agent_id in self._removing:
            raise AgentRemovingError(f"Agent {agent_id} is being removed")

        if agent.status == AgentStatus.RUNNING and not force:
            raise AgentRunningError(
                f"Agent {agent_id} is running. Use force=true to remove."
            )

        # no task can be assigned from here on
        self._removing.add(agent_id)
        try:
            if agent.status == AgentStatus.RUNNING:
                await self.stop_agent(agent_id)

            try:
                await self.worktrees.remove_worktree(agent_id, force=force)
            except WorkspaceNotFoundError:
                if not force:
                    raise
                logger.warning(f"Agent {agent_id} had no workspace left to remove")

            await self._cancel_unfinished(agent_id)
        finally:
            self._removing.discard(agent_id)

        if self._agents.pop(agent_id, None) is None:
            return
        for task_id in [t.id for t in self._tasks.values() if t.agent_id == agent_id]:
            del self._tasks[task_id]

        logger.info(f"Removed agent {agent_id}")
        self.events.emit(AgentRemoved(agent_id=agent_id))

    async def _cancel_unfinished(self, agent_id: str) -> None:
        """Cancel and finish every task of the agent that is not final yet."""
        for task in list(self._tasks.values()):
            if task.agent_id != agent_id or task.status.is_final:
                continue
            await self.runner.cancel(task.id, timeout=self.stop_timeout)
            self._finish_task(task, error=AGENT_STOPPED)

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        agent = self._agents.get(agent_id)
        return agent.model_copy() if agent else None

    def list_agents(self) -> list[Agent]:
        return [agent.model_copy() for agent in self._agents.values()]

    def get_task(self, task_id: str) -> Optional[Task]:
        task = self._tasks.get(task_id)
        return task.model_copy() if task else None

    def list_tasks_for_agent(self, agent_id: str) -> list[Task]:
        tasks = [t for t in self._tasks.values() if t.agent_id == agent_id]
        return [t.model_copy() for t in sorted(tasks, key=lambda t: t.created_at)]

    async def cleanup(self) -> None:
        """Force-remove every agent, logging failures individually."""
        for agent_id in list(self._agents):
            try:
                await self.remove_agent(agent_id, force=True)
            except Exception as e:
                logger.error(f"Failed to cleanup agent {agent_id}: {e}")
        await self.runner.shutdown(timeout=self.stop_timeout)

    def _require(self, agent_id: str) -> Agent:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise AgentNotFoundError(f"Agent {agent_id} not found")
        return agent

    def _set_agent_status(self, agent: Agent, status: AgentStatus) -> None:
        agent.status = status
        agent.last_activity = utcnow()
        self.events.emit(AgentStatusChanged(
            agent_id=agent.id,
            status=status,
            current_task=agent.current_task,
        ))

    def _emit_task_status(self, task: Task) -> None:
        self.events.emit(TaskStatusChanged(
            agent_id=task.agent_id,
            task_id=task.id,
            status=task.status,
            task=task.model_copy(),
        ))

    def _log(
        self,
        agent_id: str,
        task_id: Optional[str],
        message: str,
        level: str = "info"
    ) -> None:
        self.events.emit(AgentLog(
            agent_id=agent_id, task_id=task_id, level=level, message=message
        ))


class AgentNotFoundError(NotFoundError):
    """Raised when an agent id is unknown."""
    pass


class AgentBusyError(ConflictError):
    """Raised when assigning a task to an agent that is already running one."""
    pass


class AgentRunningError(ConflictError):
    """Raised when removing a running agent without force."""
    pass


class AgentRemovingError(ConflictError):
    """Raised when an agent is used while its removal is in progress."""
    pass
