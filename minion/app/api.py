"""REST endpoints for agents, tasks and workspaces."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from minion.errors import ConflictError, MinionError, NotFoundError, ValidationError
from minion.git.worktree_manager import MergeConflictError, Workspace, WorktreeManager
from minion.orchestrator.agent_manager import AgentManager
from minion.orchestrator.models import Agent, Task, utcnow

from .config import Settings

router = APIRouter(prefix="/api")


class CreateAgentRequest(BaseModel):
    name: Optional[str] = None


class AssignTaskRequest(BaseModel):
    description: Optional[str] = None
    context: Optional[str] = None


class MergeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    target_branch: Optional[str] = Field(default=None, alias="targetBranch")
    delete_branch: bool = Field(default=False, alias="deleteBranch")


def get_manager(request: Request) -> AgentManager:
    return request.app.state.manager


def get_worktrees(request: Request) -> WorktreeManager:
    return request.app.state.worktrees


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


async def minion_error_handler(request: Request, exc: MinionError) -> JSONResponse:
    """Map orchestrator error categories to HTTP status codes."""
    if isinstance(exc, ValidationError):
        status_code = 400
    elif isinstance(exc, NotFoundError):
        status_code = 404
    elif isinstance(exc, ConflictError):
        status_code = 409
    else:
        status_code = 500

    body = {"error": str(exc)}
    if isinstance(exc, MergeConflictError):
        body["conflicts"] = exc.conflicts
    return JSONResponse(status_code=status_code, content=body)


@router.get("/health")
async def health() -> dict:
    return {"status": "ok", "timestamp": utcnow().isoformat()}


@router.post("/agents", response_model=Agent, status_code=201)
async def create_agent(
    data: CreateAgentRequest,
    manager: AgentManager = Depends(get_manager),
) -> Agent:
    return await manager.create_agent(data.name or "")


@router.get("/agents", response_model=list[Agent])
async def list_agents(manager: AgentManager = Depends(get_manager)) -> list[Agent]:
    return manager.list_agents()


@router.get("/agents/{agent_id}", response_model=Agent)
async def get_agent(agent_id: str, manager: AgentManager = Depends(get_manager)) -> Agent:
    agent = manager.get_agent(agent_id)
    if agent is None:
        raise HTTPException(status_code=404, detail="Agent not found")
    return agent


@router.post("/agents/{agent_id}/tasks", response_model=Task, status_code=201)
async def assign_task(
    agent_id: str,
    data: AssignTaskRequest,
    manager: AgentManager = Depends(get_manager),
) -> Task:
    return await manager.assign_task(agent_id, data.description or "", data.context)


@router.get("/agents/{agent_id}/tasks", response_model=list[Task])
async def list_tasks(agent_id: str, manager: AgentManager = Depends(get_manager)) -> list[Task]:
    return manager.list_tasks_for_agent(agent_id)


@router.post("/agents/{agent_id}/stop")
async def stop_agent(agent_id: str, manager: AgentManager = Depends(get_manager)) -> dict:
    await manager.stop_agent(agent_id)
    return {"success": True}


@router.delete("/agents/{agent_id}")
async def remove_agent(
    agent_id: str,
    force: bool = False,
    manager: AgentManager = Depends(get_manager),
) -> dict:
    await manager.remove_agent(agent_id, force=force)
    return {"success": True}


@router.get("/agents/{agent_id}/diff")
async def get_diff(
    agent_id: str,
    target: Optional[str] = None,
    worktrees: WorktreeManager = Depends(get_worktrees),
    settings: Settings = Depends(get_settings),
) -> dict:
    diff = await worktrees.get_diff(agent_id, target or settings.default_target_branch)
    return {"diff": diff}


@router.post("/agents/{agent_id}/merge")
async def merge_branch(
    agent_id: str,
    data: MergeRequest,
    worktrees: WorktreeManager = Depends(get_worktrees),
    settings: Settings = Depends(get_settings),
) -> dict:
    await worktrees.merge_branch(
        agent_id,
        target_branch=data.target_branch or settings.default_target_branch,
        delete_branch=data.delete_branch,
    )
    return {"success": True}


@router.get("/workspaces", response_model=list[Workspace])
async def list_workspaces(worktrees: WorktreeManager = Depends(get_worktrees)) -> list[Workspace]:
    return worktrees.list_workspaces()
