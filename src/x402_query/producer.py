"""Work producers: turn a prompt plus prior turns into an answer.

The service only depends on the ``WorkProducer`` protocol. The bundled
``OpenAIChatProducer`` talks to an OpenAI-compatible inference endpoint
running inside a TEE.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Sequence
from typing import Optional, Protocol

import openai
from openai import AsyncOpenAI
from openai.types.chat import ChatCompletionMessageParam

from x402_query.config import DEFAULT_NILAI_BASE_URL, DEFAULT_NILAI_MODEL
from x402_query.context import Turn
from x402_query.errors import ConfigurationError, UpstreamProducerError

logger = logging.getLogger(__name__)

MEDICAL_SYSTEM_PROMPT = """You are a privacy-focused medical AI assistant powered by Nillion's secure computation network.

IMPORTANT GUIDELINES:
1. You provide general health information and guidance, NOT medical diagnoses.
2. Always recommend consulting a healthcare professional for specific medical concerns.
3. Be empathetic, clear, and concise in your responses.
4. Never store or share any personal health information outside this conversation.
5. If asked about emergency symptoms, advise seeking immediate medical attention.

Your responses are processed inside a Trusted Execution Environment (TEE) for privacy.

When responding:
- Acknowledge the user's concern
- Provide relevant general health information
- Suggest when to seek professional medical advice
- Be supportive but avoid making specific diagnoses"""


class WorkProducer(Protocol):
    @property
    def model(self) -> str: ...

    async def process_query(self, prompt: str, history: Sequence[Turn] = ()) -> str: ...

    def stream_query(
        self, prompt: str, history: Sequence[Turn] = ()
    ) -> AsyncIterator[str]: ...


class OpenAIChatProducer:
    """Chat-completions producer for an OpenAI-compatible endpoint.

    Args:
        api_key: API key for the endpoint.
        base_url: Endpoint base URL. Defaults to the nilAI TEE node.
        model: Model name.
        system_prompt: Prepended to every conversation.
        web_search: Ask the endpoint to ground answers with web search.
        client: Preconfigured ``AsyncOpenAI`` client, mainly for tests.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = DEFAULT_NILAI_BASE_URL,
        model: str = DEFAULT_NILAI_MODEL,
        system_prompt: str = MEDICAL_SYSTEM_PROMPT,
        temperature: float = 0.7,
        max_tokens: int = 1024,
        web_search: bool = True,
        client: Optional[AsyncOpenAI] = None,
    ):
        if client is None:
            if not api_key:
                raise ConfigurationError("NILLION_API_KEY environment variable is required")
            client = AsyncOpenAI(api_key=api_key, base_url=base_url)
        self._client = client
        self._model = model
        self.system_prompt = system_prompt
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.web_search = web_search

    @property
    def model(self) -> str:
        return self._model

    def _messages(
        self, prompt: str, history: Sequence[Turn]
    ) -> list[ChatCompletionMessageParam]:
        messages: list[ChatCompletionMessageParam] = [
            {"role": "system", "content": self.system_prompt}
        ]
        messages.extend({"role": t.role, "content": t.content} for t in history)
        messages.append({"role": "user", "content": prompt})
        return messages

    async def process_query(self, prompt: str, history: Sequence[Turn] = ()) -> str:
        """Answer ``prompt`` in one request.

        Raises:
            UpstreamProducerError: If the endpoint fails or returns no content.
        """
        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=self._messages(prompt, history),
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                extra_body={"web_search": self.web_search},
            )
        except openai.OpenAIError as e:
            logger.error("Inference request failed: %s", e)
            raise UpstreamProducerError("Failed to process query securely") from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise UpstreamProducerError("No response received from inference endpoint")
        logger.info("Inference response received (%d chars)", len(content))
        return content

    async def stream_query(
        self, prompt: str, history: Sequence[Turn] = ()
    ) -> AsyncIterator[str]:
        """Yield answer text increments as the endpoint produces them.

        Raises:
            UpstreamProducerError: If the endpoint fails mid-stream.
        """
        try:
            stream = await self._client.chat.completions.create(
                model=self._model,
                messages=self._messages(prompt, history),
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                stream=True,
            )
            async for chunk in stream:
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content
                if content:
                    yield content
        except openai.OpenAIError as e:
            logger.error("Inference stream failed: %s", e)
            raise UpstreamProducerError("Failed to stream response") from e
