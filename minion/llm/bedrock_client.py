"""AWS Bedrock executor invoking an Anthropic model."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel

from minion.llm.executor import ExecutorError

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a coding agent working alone in a git worktree at {working_directory}. "
    "Your changes stay on your own branch until they are reviewed and merged."
)


class BedrockConfig(BaseModel):
    """Bedrock configuration."""
    profile: Optional[str] = None
    region: str = "eu-west-1"
    model_id: str = "eu.anthropic.claude-sonnet-4-5-20250929-v1:0"
    max_tokens: int = 8000
    temperature: float = 1.0


class BedrockResponse(BaseModel):
    """Response from Bedrock API."""
    content: str
    stop_reason: str
    usage: dict[str, Any]
    model: str


class BedrockExecutor:
    """Executor backed by the Bedrock runtime ``invoke_model`` API."""

    def __init__(self, config: Optional[BedrockConfig] = None, client: Any = None):
        """
        Initialize Bedrock executor.

        Args:
            config: Model and AWS settings (default: BedrockConfig())
            client: Pre-built ``bedrock-runtime`` client; built from the
                config's profile and region when omitted
        """
        self.config = config or BedrockConfig()

        if client is None:
            session = boto3.Session(
                profile_name=self.config.profile,
                region_name=self.config.region
            )
            client = session.client(
                service_name="bedrock-runtime",
                config=Config(
                    region_name=self.config.region,
                    retries={"max_attempts": 3, "mode": "adaptive"}
                )
            )
        self.client = client

        logger.info(
            f"Initialized Bedrock executor: region={self.config.region}, "
            f"model={self.config.model_id}"
        )

    async def execute(self, prompt: str, working_directory: Path) -> str:
        """
        Invoke the model for one task prompt.

        The boto3 call blocks and runs on a worker thread; cancelling the
        awaiting coroutine abandons the call rather than interrupting it.

        Raises:
            ExecutorError: If the Bedrock call fails
        """
        response = await asyncio.to_thread(
            self.invoke_model,
            prompt,
            SYSTEM_PROMPT.format(working_directory=working_directory),
        )
        return response.content

    def invoke_model(
        self,
        prompt: str,
        system_prompt: Optional[str] = None
    ) -> BedrockResponse:
        """
        Invoke the model with a single user message.

        Args:
            prompt: User prompt
            system_prompt: Optional system prompt

        Returns:
            BedrockResponse with content and metadata

        Raises:
            ExecutorError: If API call fails
        """
        request_body: dict[str, Any] = {
            "anthropic_version": "bedrock-2023-05-31",
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
        }
        if system_prompt:
            request_body["system"] = system_prompt

        logger.debug(
            f"Invoking model: {self.config.model_id} (prompt_length={len(prompt)})"
        )

        try:
            response = self.client.invoke_model(
                modelId=self.config.model_id,
                body=json.dumps(request_body),
                contentType="application/json",
                accept="application/json"
            )
            response_body = json.loads(response["body"].read())
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Bedrock invocation failed: {e}")
            raise ExecutorError(f"Failed to invoke model: {e}") from e

        content = "".join(
            block.get("text", "")
            for block in response_body.get("content") or []
            if block.get("type") == "text"
        )
        usage = response_body.get("usage", {})

        logger.info(
            f"Model invocation finished: stop_reason={response_body.get('stop_reason')}, "
            f"input_tokens={usage.get('input_tokens')}, "
            f"output_tokens={usage.get('output_tokens')}"
        )

        return BedrockResponse(
            content=content,
            stop_reason=response_body.get("stop_reason", ""),
            usage=usage,
            model=response_body.get("model", self.config.model_id)
        )
