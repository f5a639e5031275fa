"""Executor capability: run a prompt against an agent's working directory."""

import asyncio
import logging
from pathlib import Path
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


class Executor(Protocol):
    """Anything that can carry out a task prompt inside a workspace."""

    async def execute(self, prompt: str, working_directory: Path) -> str:
        """Run ``prompt`` in ``working_directory`` and return the output."""
        ...


def build_prompt(description: str, context: Optional[str] = None) -> str:
    """Prompt for a task: optional context, blank line, then the description."""
    if context:
        return f"{context}\n\n{description}"
    return description


class StubExecutor:
    """Placeholder executor that simulates a run without calling a model."""

    def __init__(self, delay: float = 2.0):
        self.delay = delay

    async def execute(self, prompt: str, working_directory: Path) -> str:
        logger.debug(f"Stub executor running in {working_directory} ({len(prompt)} chars)")
        await asyncio.sleep(self.delay)
        return (
            f"Agent executed task in {working_directory}\n\n"
            f"Prompt: {prompt}\n\n"
            "[Placeholder: no model executor configured]"
        )


class ExecutorError(Exception):
    """Raised when an executor cannot complete a prompt."""
    pass
