"""Git worktree manager for agent isolation."""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import git as gitpython
from git import Repo
from pydantic import BaseModel

from minion.errors import ConflictError, MinionError, NotFoundError
from minion.locking.repo_lock import KeyedLock, RepoLock

logger = logging.getLogger(__name__)

DEFAULT_WORKTREES_DIR = ".minion-worktrees"


class Workspace(BaseModel):
    """One git worktree bound 1:1 to an agent."""
    agent_id: str
    path: Path
    branch_name: str
    is_active: bool = True


class WorktreeManager:
    """
    Maps each agent to an exclusive git worktree and branch.

    Git is driven through GitPython's command wrapper, so every invocation is
    an argument list handed to a ``git`` subprocess (never a shell string).
    The calls block, so they run on worker threads.

    Locking: operations on one agent are serialized by a per-agent lock (and a
    per-branch lock on creation). Worktree creation, removal and diffs take the
    shared side of the repository lock and may overlap across agents; merges
    take the exclusive side because they move the main checkout's HEAD.
    """

    def __init__(
        self,
        project_root: Path,
        worktrees_dir_name: str = DEFAULT_WORKTREES_DIR
    ):
        """
        Initialize worktree manager.

        Args:
            project_root: Any path inside the git repository
            worktrees_dir_name: Directory (under the repository root) holding
                agent worktrees

        Raises:
            NotARepositoryError: If ``project_root`` is not inside a git
                repository with a working tree
        """
        try:
            self.repo = Repo(project_root, search_parent_directories=True)
            self.repo.git.rev_parse("--git-dir")
        except (
            gitpython.InvalidGitRepositoryError,
            gitpython.NoSuchPathError,
            gitpython.GitCommandError,
        ) as e:
            raise NotARepositoryError(
                f"Not a git repository: {project_root}. "
                "Minion requires a git repository."
            ) from e

        if self.repo.bare:
            raise NotARepositoryError(
                f"Repository at {project_root} is bare; a working tree is required"
            )

        self.project_root = Path(self.repo.working_tree_dir)
        self.worktrees_dir = self.project_root / worktrees_dir_name
        self.worktrees_dir.mkdir(parents=True, exist_ok=True)
        self._exclude_worktrees_dir(worktrees_dir_name)

        self._workspaces: dict[str, Workspace] = {}
        self._repo_lock = RepoLock()
        self._locks = KeyedLock()

        logger.info(
            f"Initialized worktree manager: repo={self.project_root}, "
            f"worktrees={self.worktrees_dir}"
        )

    def _exclude_worktrees_dir(self, dir_name: str) -> None:
        """Keep the worktrees directory out of the main checkout's status."""
        exclude_path = Path(self.repo.common_dir) / "info" / "exclude"
        entry = f"/{dir_name}/"

        content = exclude_path.read_text() if exclude_path.exists() else ""
        if entry in content.splitlines():
            return

        exclude_path.parent.mkdir(parents=True, exist_ok=True)
        with exclude_path.open("a") as f:
            if content and not content.endswith("\n"):
                f.write("\n")
            f.write(f"# Agent worktrees\n{entry}\n")

    def _git(self, *args: str, cwd: Optional[Path] = None) -> str:
        """
        Run one git command synchronously.

        Args:
            *args: Arguments after ``git``
            cwd: Working directory (default: repository root)

        Returns:
            Command stdout

        Raises:
            GitOperationError: On non-zero exit, with exit status and stderr
        """
        runner = self.repo.git if cwd is None else gitpython.Git(str(cwd))
        command = ["git", *args]
        try:
            return runner.execute(command)
        except gitpython.GitCommandError as e:
            stderr = _clean_stderr(e.stderr)
            raise GitOperationError(
                stderr or f"git {' '.join(args)} exited with status {e.status}",
                command=command,
                status=e.status,
                stderr=stderr,
            ) from e

    async def _run_git(self, *args: str, cwd: Optional[Path] = None) -> str:
        return await asyncio.to_thread(self._git, *args, cwd=cwd)

    async def create_worktree(self, agent_id: str, branch_name: str) -> Path:
        """
        Create a branch from the current HEAD and a worktree checked out on it.

        Args:
            agent_id: Owning agent
            branch_name: Name of branch to create (e.g., "minion/alice-1a2b3c4d")

        Returns:
            Path to worktree directory

        Raises:
            WorkspaceExistsError: If the agent already has a workspace or the
                branch is bound to another one
            GitOperationError: If branch or worktree creation fails
        """
        async with self._locks(f"agent:{agent_id}"), self._locks(f"branch:{branch_name}"):
            if agent_id in self._workspaces:
                raise WorkspaceExistsError(
                    f"Worktree already exists for agent {agent_id}"
                )

            worktree_path = self.worktrees_dir / agent_id
            if worktree_path.exists():
                raise WorkspaceExistsError(
                    f"Worktree already exists for agent {agent_id}: {worktree_path}"
                )

            if any(ws.branch_name == branch_name for ws in self._workspaces.values()):
                raise WorkspaceExistsError(
                    f"Branch {branch_name} is already bound to a workspace"
                )

            async with self._repo_lock.shared():
                try:
                    await self._run_git("branch", branch_name)
                except GitOperationError as e:
                    logger.error(f"Failed to create branch {branch_name}: {e}")
                    raise e.with_context("Failed to create worktree") from e

                try:
                    await self._run_git(
                        "worktree", "add", str(worktree_path), branch_name
                    )
                except GitOperationError as e:
                    logger.error(f"Failed to create worktree {worktree_path}: {e}")
                    await self._rollback_branch(branch_name)
                    raise e.with_context("Failed to create worktree") from e

            self._workspaces[agent_id] = Workspace(
                agent_id=agent_id,
                path=worktree_path,
                branch_name=branch_name,
            )
            logger.info(f"Created worktree: {worktree_path} (branch {branch_name})")
            return worktree_path

    async def _rollback_branch(self, branch_name: str) -> None:
        """Delete a branch left behind by a failed worktree creation."""
        try:
            await self._run_git("branch", "-D", branch_name)
            logger.info(f"Rolled back branch {branch_name}")
        except GitOperationError as e:
            logger.warning(f"Could not roll back branch {branch_name}: {e}")

    async def remove_worktree(self, agent_id: str, force: bool = False) -> None:
        """
        Remove an agent's worktree.

        The branch is deleted too when git considers it merged; a branch
        holding unmerged work is kept.

        Args:
            agent_id: Owning agent
            force: Discard uncommitted changes in the worktree

        Raises:
            WorkspaceNotFoundError: If the agent has no active workspace
            GitOperationError: If git refuses the removal
        """
        async with self._locks(f"agent:{agent_id}"):
            workspace = self._workspaces.get(agent_id)
            if workspace is None:
                raise WorkspaceNotFoundError(f"No worktree found for agent {agent_id}")

            async with self._repo_lock.shared():
                try:
                    if force and not workspace.path.exists():
                        # directory deleted behind our back; drop git's record of it
                        await self._run_git("worktree", "prune")
                    else:
                        args = ["worktree", "remove", str(workspace.path)]
                        if force:
                            args.append("--force")
                        await self._run_git(*args)
                except GitOperationError as e:
                    logger.error(f"Failed to remove worktree {workspace.path}: {e}")
                    raise e.with_context("Failed to remove worktree") from e

                workspace.is_active = False
                del self._workspaces[agent_id]
                logger.info(f"Removed worktree: {workspace.path}")

                await self._delete_merged_branch(workspace.branch_name)

        self._locks.discard(f"agent:{agent_id}")
        self._locks.discard(f"branch:{workspace.branch_name}")

    async def _delete_merged_branch(self, branch_name: str) -> None:
        try:
            await self._run_git("branch", "-d", branch_name)
            logger.info(f"Deleted branch: {branch_name}")
        except GitOperationError as e:
            logger.info(f"Keeping branch {branch_name}: {e}")

    async def merge_branch(
        self,
        agent_id: str,
        target_branch: str = "main",
        delete_branch: bool = False
    ) -> None:
        """
        Merge an agent's branch into ``target_branch`` in the main checkout.

        Holds the repository lock exclusively for the whole operation. A failed
        merge is aborted so the main checkout is left clean.

        Args:
            agent_id: Agent whose branch is merged
            target_branch: Branch to merge into (checked out in the main repo)
            delete_branch: Delete the agent branch after a successful merge;
                the agent worktree is detached at the merged commit first

        Raises:
            WorkspaceNotFoundError: If the agent has no active workspace
            MergeConflictError: If the merge stops on conflicts
            GitOperationError: If checkout, merge or branch deletion fails
        """
        async with self._locks(f"agent:{agent_id}"):
            workspace = self._require(agent_id)
            branch_name = workspace.branch_name

            async with self._repo_lock.exclusive():
                try:
                    await self._run_git("checkout", target_branch)
                except GitOperationError as e:
                    raise e.with_context("Failed to merge branch") from e

                try:
                    await self._run_git("merge", branch_name, "--no-edit")
                except GitOperationError as e:
                    conflicts = await self._conflicted_files()
                    await self._abort_merge()
                    if conflicts:
                        logger.warning(
                            f"Merge of {branch_name} into {target_branch} conflicts "
                            f"in {len(conflicts)} files"
                        )
                        raise MergeConflictError(
                            f"Failed to merge branch: conflicts in "
                            f"{', '.join(conflicts)}",
                            conflicts=conflicts,
                        ) from e
                    raise e.with_context("Failed to merge branch") from e

                logger.info(f"Merged {branch_name} into {target_branch}")

                if delete_branch:
                    try:
                        await self._run_git("checkout", "--detach", cwd=workspace.path)
                        await self._run_git("branch", "-d", branch_name)
                    except GitOperationError as e:
                        raise e.with_context("Failed to delete merged branch") from e
                    logger.info(f"Deleted merged branch: {branch_name}")

    async def _conflicted_files(self) -> list[str]:
        try:
            output = await self._run_git("diff", "--name-only", "--diff-filter=U")
        except GitOperationError:
            return []
        return [line for line in output.split("\n") if line]

    async def _abort_merge(self) -> None:
        try:
            await self._run_git("merge", "--abort")
            logger.info("Merge aborted")
        except GitOperationError as e:
            # nothing to abort when the merge never started
            logger.debug(f"merge --abort: {e}")

    async def get_diff(self, agent_id: str, target_branch: str = "main") -> str:
        """
        Diff of the agent branch against the point it diverged from ``target_branch``.

        Args:
            agent_id: Agent whose branch is diffed
            target_branch: Trunk to compare against

        Returns:
            Unified diff text (empty when the branch has no unique changes)

        Raises:
            WorkspaceNotFoundError: If the agent has no active workspace
            GitOperationError: If git fails (e.g., unknown target branch)
        """
        workspace = self._require(agent_id)
        async with self._repo_lock.shared():
            try:
                return await self._run_git(
                    "diff", f"{target_branch}...{workspace.branch_name}"
                )
            except GitOperationError as e:
                raise e.with_context("Failed to get diff") from e

    def _require(self, agent_id: str) -> Workspace:
        workspace = self._workspaces.get(agent_id)
        if workspace is None:
            raise WorkspaceNotFoundError(f"No workspace found for agent {agent_id}")
        return workspace

    def get_workspace(self, agent_id: str) -> Optional[Workspace]:
        workspace = self._workspaces.get(agent_id)
        return workspace.model_copy() if workspace else None

    def list_workspaces(self) -> list[Workspace]:
        return [ws.model_copy() for ws in self._workspaces.values()]

    async def cleanup(self) -> None:
        """Force-remove every active workspace, logging failures individually."""
        for agent_id in list(self._workspaces):
            try:
                await self.remove_worktree(agent_id, force=True)
            except Exception as e:
                logger.error(f"Failed to cleanup worktree for {agent_id}: {e}")


def _clean_stderr(stderr: Optional[str]) -> str:
    """Strip GitPython's "stderr: '...'" decoration."""
    text = (stderr or "").strip()
    if text.startswith("stderr:"):
        text = text[len("stderr:"):].strip()
    return text.strip("'").strip()


class GitOperationError(MinionError):
    """Raised when a git command exits non-zero."""

    def __init__(
        self,
        message: str,
        command: Optional[list[str]] = None,
        status: Optional[int] = None,
        stderr: str = ""
    ):
        super().__init__(message)
        self.command = command or []
        self.status = status
        self.stderr = stderr

    def with_context(self, context: str) -> "GitOperationError":
        """Copy of this error with ``context`` prefixed to the message."""
        return GitOperationError(
            f"{context}: {self}",
            command=self.command,
            status=self.status,
            stderr=self.stderr,
        )


class NotARepositoryError(MinionError):
    """Raised at startup when the project root is not a git repository."""
    pass


class WorkspaceExistsError(ConflictError):
    """Raised when an agent or branch already has a workspace."""
    pass


class WorkspaceNotFoundError(NotFoundError):
    """Raised when an agent has no active workspace."""
    pass


class MergeConflictError(ConflictError):
    """Raised when merging an agent branch stops on conflicts."""

    def __init__(self, message: str, conflicts: Optional[list[str]] = None):
        super().__init__(message)
        self.conflicts = conflicts or []
