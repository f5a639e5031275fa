"""Shared fixtures: throwaway git repositories and controllable executors."""

import asyncio
from pathlib import Path
from typing import Callable, Optional

import git as gitpython
import pytest

from minion.events import EventBus
from minion.git.worktree_manager import WorktreeManager
from minion.orchestrator.agent_manager import AgentManager
from minion.orchestrator.task_runner import TaskRunner

AUTHOR = gitpython.Actor("Test Agent", "agent@test.local")


class FakeExecutor:
    """Executor whose outcome and timing the test controls."""

    def __init__(self, output: str = "done", error: Optional[Exception] = None):
        self.output = output
        self.error = error
        self.hold = False
        self.release = asyncio.Event()
        self.started = asyncio.Event()
        self.calls: list[tuple[str, Path]] = []

    async def execute(self, prompt: str, working_directory: Path) -> str:
        self.calls.append((prompt, working_directory))
        self.started.set()
        if self.hold:
            await self.release.wait()
        if self.error is not None:
            raise self.error
        return self.output


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll ``predicate`` on the event loop until it holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def commit_file(repo_path: Path, name: str, content: str, message: str) -> str:
    """Write and commit one file in the checkout at ``repo_path``."""
    repo = gitpython.Repo(repo_path)
    (repo_path / name).write_text(content)
    repo.index.add([name])
    commit = repo.index.commit(message, author=AUTHOR, committer=AUTHOR)
    return commit.hexsha


@pytest.fixture
def git_repo(tmp_path, monkeypatch) -> Path:
    """A repository on branch ``main`` with one commit."""
    for var, value in (
        ("GIT_AUTHOR_NAME", AUTHOR.name),
        ("GIT_AUTHOR_EMAIL", AUTHOR.email),
        ("GIT_COMMITTER_NAME", AUTHOR.name),
        ("GIT_COMMITTER_EMAIL", AUTHOR.email),
    ):
        monkeypatch.setenv(var, value)

    path = tmp_path / "repo"
    path.mkdir()
    repo = gitpython.Repo.init(path)
    commit_file(path, "README.md", "# Test Project\n", "Initial commit")
    repo.git.branch("-M", "main")
    return path


@pytest.fixture
def worktrees(git_repo) -> WorktreeManager:
    return WorktreeManager(git_repo)


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
async def manager(worktrees, executor, events):
    manager = AgentManager(
        worktrees,
        executor,
        events=events,
        runner=TaskRunner(max_concurrent=4),
        stop_timeout=2.0,
    )
    yield manager
    executor.release.set()
    await manager.cleanup()
