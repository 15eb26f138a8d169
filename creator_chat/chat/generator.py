"""Answer generation with a pydantic-ai agent.

The agent has no tools: retrieval already happened, and the grounded system
prompt built for each request is supplied through the run dependencies.
"""

from collections.abc import AsyncIterator
from dataclasses import dataclass

from pydantic_ai import Agent, RunContext
from pydantic_ai.models import Model
from pydantic_ai.settings import ModelSettings

from creator_chat.utils.logging import get_logger

from .config import RagConfig, get_model

logger = get_logger(__name__)


@dataclass
class AnswerDeps:
    """Per-request inputs for the answer agent.

    Attributes:
        system_prompt: Persona, rules, transcript chunks and history block.
    """

    system_prompt: str


def _grounded_instructions(ctx: RunContext[AnswerDeps]) -> str:
    return ctx.deps.system_prompt


class AnswerGenerator:
    def __init__(self, config: RagConfig, model: Model | str | None = None):
        self.config = config
        self.agent = Agent(
            model or get_model(config),
            deps_type=AnswerDeps,
            model_settings=ModelSettings(
                temperature=config.temperature, max_tokens=config.max_tokens
            ),
            retries=2,
        )
        self.agent.instructions(_grounded_instructions)

    async def generate(self, system_prompt: str, query: str) -> str:
        """Generate a complete answer for ``query``."""
        try:
            result = await self.agent.run(query, deps=AnswerDeps(system_prompt))
        except Exception as e:
            logger.exception("answer_generation_failed", error_type=type(e).__name__)
            raise
        return result.output

    async def stream(self, system_prompt: str, query: str) -> AsyncIterator[str]:
        """Yield the answer as text deltas."""
        try:
            async with self.agent.run_stream(query, deps=AnswerDeps(system_prompt)) as result:
                async for delta in result.stream_text(delta=True):
                    yield delta
        except Exception as e:
            logger.exception("answer_stream_failed", error_type=type(e).__name__)
            raise
