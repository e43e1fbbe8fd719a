# llm.py
# The LLM boundary: an opaque text-completion capability.
#
# The Planner depends only on the LLM protocol. OpenAICompletion is the
# default adapter and talks to any OpenAI-compatible endpoint (OpenRouter by
# default). Swap model strings for any OpenRouter-supported model.

import os
from typing import Protocol

from openai import AsyncOpenAI
from pydantic import BaseModel


class CompletionOptions(BaseModel):
    system: str | None = None
    temperature: float = 0.1
    max_tokens: int | None = None


class LLM(Protocol):
    async def complete(self, prompt: str, options: CompletionOptions | None = None) -> str: ...


class OpenAICompletion:
    """Chat-completions adapter. Returns the first choice's text, stripped."""

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        base_url: str = "https://openrouter.ai/api/v1",
    ) -> None:
        self._model = model
        self._client = AsyncOpenAI(
            base_url=base_url,
            api_key=api_key or os.getenv("OPENROUTER_API_KEY"),
        )

    @property
    def model(self) -> str:
        return self._model

    async def complete(self, prompt: str, options: CompletionOptions | None = None) -> str:
        options = options or CompletionOptions()
        messages: list[dict] = []
        if options.system:
            messages.append({"role": "system", "content": options.system})
        messages.append({"role": "user", "content": prompt})

        kwargs: dict = {"model": self._model, "messages": messages, "temperature": options.temperature}
        if options.max_tokens is not None:
            kwargs["max_tokens"] = options.max_tokens

        response = await self._client.chat.completions.create(**kwargs)
        return (response.choices[0].message.content or "").strip()
