"""FastAPI application for the minion orchestrator."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from minion import __version__
from minion.errors import MinionError
from minion.events import EventBus
from minion.git.worktree_manager import WorktreeManager
from minion.llm.executor import Executor, StubExecutor
from minion.orchestrator.agent_manager import AgentManager
from minion.orchestrator.task_runner import TaskRunner

from .api import minion_error_handler, router as api_router
from .config import Settings, settings
from .database import create_engine, create_session_factory, init_db
from .persistence import PersistenceSubscriber
from .repository import Repository
from .ws import router as ws_router

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def build_executor(config: Settings) -> Executor:
    """Executor selected by ``config.executor``."""
    if config.executor == "bedrock":
        from minion.llm.bedrock_client import BedrockConfig, BedrockExecutor

        return BedrockExecutor(BedrockConfig(
            profile=config.aws_profile,
            region=config.aws_region,
            model_id=config.bedrock_model_id,
            max_tokens=config.max_tokens,
        ))
    return StubExecutor(delay=config.stub_delay)


def create_app(
    config: Optional[Settings] = None,
    executor: Optional[Executor] = None
) -> FastAPI:
    """
    Build the application.

    Args:
        config: Settings to use (default: the global settings)
        executor: Executor override (default: built from the settings)
    """
    config = config or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Wire components on startup; remove agents and worktrees on shutdown."""
        logger.info("Starting minion API")

        # NotARepositoryError aborts startup
        worktrees = WorktreeManager(config.repo_path, config.worktrees_dir_name)
        events = EventBus(queue_size=config.event_queue_size)
        manager = AgentManager(
            worktrees,
            executor or build_executor(config),
            events=events,
            runner=TaskRunner(max_concurrent=config.max_concurrent_tasks),
            branch_prefix=config.branch_prefix,
            stop_timeout=config.stop_timeout,
        )

        engine = None
        persistence = None
        if config.persistence_enabled:
            engine = create_engine(config.database_url)
            await init_db(engine)
            persistence = PersistenceSubscriber(
                Repository(create_session_factory(engine)), events
            )
            persistence.start()

        app.state.settings = config
        app.state.worktrees = worktrees
        app.state.manager = manager

        yield

        logger.info("Shutting down minion API")
        await manager.cleanup()
        await worktrees.cleanup()
        if persistence is not None:
            await persistence.stop()
        events.close()
        if engine is not None:
            await engine.dispose()
        logger.info("Minion stopped")

    app = FastAPI(
        title="Minion API",
        description="Isolated git worktrees for concurrent coding agents",
        version=__version__,
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", f"http://localhost:{config.port}"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(MinionError, minion_error_handler)
    app.include_router(api_router)
    app.include_router(ws_router)

    return app


app = create_app()

