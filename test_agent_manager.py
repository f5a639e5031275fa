"""Tests for AgentManager lifecycle and task execution."""

import asyncio

import pytest

from conftest import FakeExecutor, wait_until
from minion.errors import ValidationError
from minion.events import EventBus
from minion.git.worktree_manager import GitOperationError
from minion.orchestrator.agent_manager import (
    AGENT_STOPPED,
    AgentBusyError,
    AgentManager,
    AgentNotFoundError,
    AgentRemovingError,
    AgentRunningError,
    derive_branch_name,
)
from minion.orchestrator.models import AgentStatus, TaskStatus
from minion.orchestrator.task_runner import TaskRunner


def task_done(manager, task_id):
    return lambda: manager.get_task(task_id).status.is_final


def test_derive_branch_name():
    agent_id = "1a2b3c4d-0000-0000-0000-000000000000"
    assert derive_branch_name("Alice", agent_id) == "minion/alice-1a2b3c4d"
    assert derive_branch_name("Alice  Smith\tJr", agent_id) == "minion/alice-smith-jr-1a2b3c4d"
    assert derive_branch_name("fix: bug~1", agent_id) == "minion/fix-bug-1-1a2b3c4d"
    assert derive_branch_name("???", agent_id, prefix="") == "agent-1a2b3c4d"


async def test_create_agent(manager, worktrees):
    agent = await manager.create_agent("Alice")

    assert agent.status == AgentStatus.IDLE
    assert agent.name == "Alice"
    assert agent.branch_name == f"minion/alice-{agent.id[:8]}"
    assert agent.workspace_path.exists()
    assert agent.current_task is None
    assert agent.last_activity is not None
    assert worktrees.get_workspace(agent.id).path == agent.workspace_path
    assert [a.id for a in manager.list_agents()] == [agent.id]


async def test_create_agent_requires_name(manager, worktrees):
    with pytest.raises(ValidationError):
        await manager.create_agent("   ")
    assert manager.list_agents() == []
    assert worktrees.list_workspaces() == []


async def test_create_agent_not_registered_when_workspace_fails(manager, worktrees, monkeypatch):
    async def broken_create(agent_id, branch_name):
        raise GitOperationError("Failed to create worktree: disk full")

    monkeypatch.setattr(worktrees, "create_worktree", broken_create)

    with pytest.raises(GitOperationError):
        await manager.create_agent("Alice")
    assert manager.list_agents() == []


async def test_same_name_gives_distinct_workspaces(manager, worktrees):
    first = await manager.create_agent("Dup")
    second = await manager.create_agent("Dup")

    assert first.branch_name != second.branch_name
    assert first.workspace_path != second.workspace_path

    workspaces = worktrees.list_workspaces()
    assert len(workspaces) == 2
    assert len({ws.path for ws in workspaces}) == 2


async def test_task_completes(manager, executor):
    agent = await manager.create_agent("Alice")

    task = await manager.assign_task(agent.id, "write tests")
    assert task.status == TaskStatus.PENDING
    assert task.started_at is None
    assert manager.get_agent(agent.id).current_task == task.id

    await wait_until(task_done(manager, task.id))

    task = manager.get_task(task.id)
    assert task.status == TaskStatus.COMPLETED
    assert task.output == "done"
    assert task.error is None
    assert task.started_at <= task.completed_at
    assert manager.get_agent(agent.id).status == AgentStatus.COMPLETED

    prompt, working_directory = executor.calls[0]
    assert prompt == "write tests"
    assert working_directory == agent.workspace_path


async def test_context_is_prepended_to_prompt(manager, executor):
    agent = await manager.create_agent("Alice")

    task = await manager.assign_task(agent.id, "write tests", context="Project uses pytest")
    await wait_until(task_done(manager, task.id))

    assert executor.calls[0][0] == "Project uses pytest\n\nwrite tests"


async def test_task_error(manager, executor):
    executor.error = RuntimeError("network error")
    agent = await manager.create_agent("Bob")

    task = await manager.assign_task(agent.id, "deploy")
    await wait_until(task_done(manager, task.id))

    task = manager.get_task(task.id)
    assert task.status == TaskStatus.ERROR
    assert task.error == "network error"
    assert task.output is None
    assert task.completed_at is not None
    assert manager.get_agent(agent.id).status == AgentStatus.ERROR


async def test_assign_task_requires_description(manager):
    agent = await manager.create_agent("Alice")
    with pytest.raises(ValidationError):
        await manager.assign_task(agent.id, "")
    assert manager.list_tasks_for_agent(agent.id) == []


async def test_assign_task_to_unknown_agent(manager):
    with pytest.raises(AgentNotFoundError):
        await manager.assign_task("nobody", "anything")


async def test_assign_task_while_running_is_rejected(manager, executor):
    executor.hold = True
    agent = await manager.create_agent("Alice")
    first = await manager.assign_task(agent.id, "first")

    # rejected before the background task even started
    with pytest.raises(AgentBusyError, match="already running"):
        await manager.assign_task(agent.id, "second")

    await executor.started.wait()
    with pytest.raises(AgentBusyError):
        await manager.assign_task(agent.id, "third")

    assert [t.id for t in manager.list_tasks_for_agent(agent.id)] == [first.id]


async def test_agent_is_reusable_after_task(manager, executor):
    agent = await manager.create_agent("Alice")
    first = await manager.assign_task(agent.id, "first")
    await wait_until(task_done(manager, first.id))

    executor.error = RuntimeError("boom")
    second = await manager.assign_task(agent.id, "second")
    await wait_until(task_done(manager, second.id))

    executor.error = None
    third = await manager.assign_task(agent.id, "third")
    await wait_until(task_done(manager, third.id))

    statuses = [t.status for t in manager.list_tasks_for_agent(agent.id)]
    assert statuses == [TaskStatus.COMPLETED, TaskStatus.ERROR, TaskStatus.COMPLETED]
    assert manager.get_agent(agent.id).current_task == third.id


async def test_stop_running_agent(manager, executor):
    executor.hold = True
    agent = await manager.create_agent("Carol")
    task = await manager.assign_task(agent.id, "long job")
    await executor.started.wait()
    assert manager.get_task(task.id).status == TaskStatus.RUNNING

    await manager.stop_agent(agent.id)

    assert manager.get_agent(agent.id).status == AgentStatus.STOPPED
    task = manager.get_task(task.id)
    assert task.status == TaskStatus.ERROR
    assert task.error == AGENT_STOPPED
    assert task.output is None

    # a late executor result never overwrites the final state
    executor.release.set()
    await asyncio.sleep(0.05)
    assert manager.get_task(task.id).error == AGENT_STOPPED
    assert manager.get_agent(agent.id).status == AgentStatus.STOPPED


async def test_stop_idle_agent_is_idempotent(manager):
    agent = await manager.create_agent("Dave")
    await manager.stop_agent(agent.id)
    await manager.stop_agent(agent.id)
    assert manager.get_agent(agent.id).status == AgentStatus.STOPPED


async def test_stop_unknown_agent(manager):
    with pytest.raises(AgentNotFoundError):
        await manager.stop_agent("nobody")


async def test_stopped_agent_accepts_new_task(manager, executor):
    executor.hold = True
    agent = await manager.create_agent("Carol")
    await manager.assign_task(agent.id, "first")
    await manager.stop_agent(agent.id)

    executor.hold = False
    task = await manager.assign_task(agent.id, "second")
    await wait_until(task_done(manager, task.id))
    assert manager.get_task(task.id).status == TaskStatus.COMPLETED
    assert manager.get_agent(agent.id).status == AgentStatus.COMPLETED


async def test_remove_running_agent_requires_force(manager, executor, worktrees):
    executor.hold = True
    agent = await manager.create_agent("Eve")
    task = await manager.assign_task(agent.id, "long job")
    await executor.started.wait()

    with pytest.raises(AgentRunningError):
        await manager.remove_agent(agent.id)

    assert manager.get_agent(agent.id).status == AgentStatus.RUNNING
    assert worktrees.get_workspace(agent.id) is not None
    assert manager.get_task(task.id).status == TaskStatus.RUNNING

    await manager.remove_agent(agent.id, force=True)

    assert manager.get_agent(agent.id) is None
    assert manager.list_agents() == []
    assert worktrees.list_workspaces() == []
    assert manager.get_task(task.id) is None
    assert not agent.workspace_path.exists()


async def test_assign_task_rejected_while_removal_in_progress(
    manager, worktrees, executor, events, monkeypatch
):
    removed = events.subscribe(kinds=["agent_removed"])
    agent = await manager.create_agent("Frank")

    gate = asyncio.Event()
    remove_worktree = worktrees.remove_worktree

    async def slow_remove_worktree(agent_id, force=False):
        await gate.wait()
        await remove_worktree(agent_id, force=force)

    monkeypatch.setattr(worktrees, "remove_worktree", slow_remove_worktree)

    removal = asyncio.create_task(manager.remove_agent(agent.id, force=True))
    await asyncio.sleep(0.01)

    with pytest.raises(AgentRemovingError):
        await manager.assign_task(agent.id, "late work")

    gate.set()
    await removal

    assert manager.list_agents() == []
    assert manager.list_tasks_for_agent(agent.id) == []
    assert manager.runner.active_count == 0
    assert executor.calls == []
    assert len(removed.drain()) == 1


async def test_overlapping_force_removals(manager, events):
    removed = events.subscribe(kinds=["agent_removed"])
    agent = await manager.create_agent("Grace")

    results = await asyncio.gather(
        manager.remove_agent(agent.id, force=True),
        manager.remove_agent(agent.id, force=True),
        return_exceptions=True,
    )

    assert results.count(None) == 1
    [failure] = [r for r in results if r is not None]
    assert isinstance(failure, (AgentRemovingError, AgentNotFoundError))
    assert manager.list_agents() == []
    assert len(removed.drain()) == 1


async def test_failed_removal_can_be_retried(manager, worktrees, monkeypatch):
    agent = await manager.create_agent("Heidi")
    remove_worktree = worktrees.remove_worktree

    async def broken_remove_worktree(agent_id, force=False):
        raise GitOperationError("Failed to remove worktree: locked")

    monkeypatch.setattr(worktrees, "remove_worktree", broken_remove_worktree)
    with pytest.raises(GitOperationError):
        await manager.remove_agent(agent.id)
    assert manager.get_agent(agent.id) is not None

    monkeypatch.setattr(worktrees, "remove_worktree", remove_worktree)
    await manager.remove_agent(agent.id)
    assert manager.get_agent(agent.id) is None


async def test_remove_unknown_agent(manager):
    with pytest.raises(AgentNotFoundError):
        await manager.remove_agent("nobody")


async def test_unexpected_pipeline_failure_marks_error(manager, monkeypatch):
    async def broken_run_task(agent, task):
        raise RuntimeError("event subscriber exploded")

    monkeypatch.setattr(manager, "_run_task", broken_run_task)
    agent = await manager.create_agent("Ivan")

    task = await manager.assign_task(agent.id, "anything")
    await wait_until(task_done(manager, task.id))

    task = manager.get_task(task.id)
    assert task.status == TaskStatus.ERROR
    assert task.error == "event subscriber exploded"
    assert task.completed_at is not None
    assert manager.get_agent(agent.id).status == AgentStatus.ERROR


async def test_lifecycle_events(manager, events):
    subscription = events.subscribe()
    agent = await manager.create_agent("Alice")
    task = await manager.assign_task(agent.id, "write tests")
    await wait_until(task_done(manager, task.id))
    await manager.remove_agent(agent.id)

    kinds = [e.kind for e in subscription.drain()]
    assert kinds[0] == "agent_created"
    assert kinds[-1] == "agent_removed"
    for kind in ("agent_status_changed", "task_status_changed", "task_completed", "agent_log"):
        assert kind in kinds
    assert kinds.index("task_completed") < kinds.index("agent_removed")


async def test_task_status_events_are_ordered(manager, events):
    subscription = events.subscribe(kinds=["task_status_changed"])
    agent = await manager.create_agent("Alice")
    task = await manager.assign_task(agent.id, "write tests")
    await wait_until(task_done(manager, task.id))

    statuses = [e.status for e in subscription.drain() if e.task_id == task.id]
    assert statuses == [TaskStatus.PENDING, TaskStatus.RUNNING, TaskStatus.COMPLETED]


async def test_pool_limit_keeps_tasks_pending(worktrees):
    executor = FakeExecutor()
    executor.hold = True
    manager = AgentManager(
        worktrees, executor, events=EventBus(), runner=TaskRunner(max_concurrent=1)
    )
    try:
        first_agent = await manager.create_agent("One")
        second_agent = await manager.create_agent("Two")
        first = await manager.assign_task(first_agent.id, "first")
        second = await manager.assign_task(second_agent.id, "second")

        await executor.started.wait()
        await asyncio.sleep(0.05)
        assert manager.get_task(first.id).status == TaskStatus.RUNNING
        assert manager.get_task(second.id).status == TaskStatus.PENDING
        assert manager.get_agent(second_agent.id).status == AgentStatus.RUNNING

        # stopping a queued task finishes it without ever running it
        await manager.stop_agent(second_agent.id)
        assert manager.get_task(second.id).status == TaskStatus.ERROR
        assert manager.get_task(second.id).started_at is None

        executor.release.set()
        await wait_until(task_done(manager, first.id))
        assert len(executor.calls) == 1
    finally:
        executor.release.set()
        await manager.cleanup()


async def test_cleanup_removes_all_agents(manager, worktrees, executor):
    executor.hold = True
    idle = await manager.create_agent("Idle")
    busy = await manager.create_agent("Busy")
    await manager.assign_task(busy.id, "long job")
    await executor.started.wait()

    await manager.cleanup()

    assert manager.list_agents() == []
    assert worktrees.list_workspaces() == []
    assert not idle.workspace_path.exists()
    assert not busy.workspace_path.exists()
