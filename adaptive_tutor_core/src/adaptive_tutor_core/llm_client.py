"""
Text Completion Client

Thin async wrapper over the OpenAI chat completions API exposing the single
operation the core needs: complete(prompt) -> text.
"""

import logging
import time
from typing import Optional

from openai import AsyncOpenAI

from adaptive_tutor_core.errors import ConfigurationError, MalformedResponse, UpstreamUnavailable

logger = logging.getLogger(__name__)


class CompletionClient:
    """Opaque text-completion inference."""

    async def complete(
        self,
        prompt: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        json_mode: bool = False,
        system: Optional[str] = None,
    ) -> str:
        raise NotImplementedError


class OpenAICompletionClient(CompletionClient):
    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini",
        temperature: float = 0.7,
        max_tokens: int = 1024,
        client: Optional[AsyncOpenAI] = None,
    ):
        if client is None:
            if not api_key:
                raise ConfigurationError("OPENAI_API_KEY not found in environment variables")
            client = AsyncOpenAI(api_key=api_key)
        self.client = client
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def complete(
        self,
        prompt: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        json_mode: bool = False,
        system: Optional[str] = None,
    ) -> str:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        kwargs = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature if temperature is None else temperature,
            "max_tokens": max_tokens or self.max_tokens,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        start_time = time.time()
        try:
            completion = await self.client.chat.completions.create(**kwargs)
        except Exception as e:
            logger.error(f"❌ [LLM] Completion failed ({self.model}): {e}")
            raise UpstreamUnavailable(f"Completion model unavailable: {e}") from e

        elapsed = time.time() - start_time
        logger.debug(f"⏱️ [LLM] {self.model} responded in {elapsed:.2f}s")
        if not completion.choices:
            raise MalformedResponse(f"{self.model} returned no choices")
        return completion.choices[0].message.content or ""
