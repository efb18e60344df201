#!/usr/bin/env python3
"""
Conversation sessions backed by PydanticAI
"The doctor said I wouldn't have so many nose bleeds if I kept my finger outta there." - Ralph Wiggum

One session per persona per debate. The session keeps the message history,
each send() streams the reply as text fragments and is not restartable.
"""

import logging
from typing import AsyncIterator, List, Optional, Union

import httpx
from pydantic_ai import Agent
from pydantic_ai.exceptions import AgentRunError, UserError
from pydantic_ai.messages import ModelMessage
from pydantic_ai.models import Model

from .errors import BackendError

logger = logging.getLogger(__name__)

ModelRef = Union[str, Model]


def get_model(model: ModelRef, api_key: Optional[str] = None) -> Model:
    """Bind a bare Gemini model name to Google's provider; pass Model instances through"""
    if isinstance(model, Model):
        return model

    from pydantic_ai.models.google import GoogleModel
    from pydantic_ai.providers.google import GoogleProvider

    name = model.split(":", 1)[1] if ":" in model else model
    try:
        return GoogleModel(name, provider=GoogleProvider(api_key=api_key))
    except UserError as e:
        raise BackendError(f"Could not configure model {name}: {e}") from e


class ConversationSession:
    """A persona's dialogue with the backend"""

    def __init__(self, agent: Agent, system_instruction: str):
        self._agent = agent
        self.system_instruction = system_instruction
        self.history: List[ModelMessage] = []

    async def send(self, message: str) -> AsyncIterator[str]:
        """Stream the reply to `message`; history only grows once the reply finishes"""
        try:
            async with self._agent.run_stream(message, message_history=self.history) as result:
                async for fragment in result.stream_text(delta=True):
                    yield fragment
                self.history = result.all_messages()
        except AgentRunError as e:
            raise BackendError(f"Conversation request failed: {e}", getattr(e, "status_code", None)) from e
        except httpx.HTTPError as e:
            raise BackendError(f"Conversation transport failed: {e}") from e


class ConversationBackend:
    """Creates sessions and runs one-shot prompts against the generative-language API"""

    def __init__(self, api_key: Optional[str] = None, default_model: ModelRef = "gemini-2.5-flash"):
        self.api_key = api_key
        self.default_model = default_model

    def _agent(self, model: Optional[ModelRef], system_instruction: Optional[str] = None) -> Agent:
        resolved = get_model(model or self.default_model, self.api_key)
        try:
            if system_instruction:
                return Agent(resolved, output_type=str, system_prompt=system_instruction)
            return Agent(resolved, output_type=str)
        except UserError as e:
            raise BackendError(f"Could not create agent: {e}") from e

    def create_session(self, model: Optional[ModelRef], system_instruction: str) -> ConversationSession:
        return ConversationSession(self._agent(model, system_instruction), system_instruction)

    async def generate_once(self, model: Optional[ModelRef], prompt: str) -> str:
        agent = self._agent(model)
        try:
            result = await agent.run(prompt)
        except AgentRunError as e:
            raise BackendError(f"Generation failed: {e}", getattr(e, "status_code", None)) from e
        except httpx.HTTPError as e:
            raise BackendError(f"Generation transport failed: {e}") from e
        return result.output
