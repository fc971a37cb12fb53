import json
from typing import Any

import openai
from loguru import logger
from openai import AsyncOpenAI
from pydantic import BaseModel

from finance_bot.errors import ProviderError
from finance_bot.llm.prompts import Prompt
from finance_bot.retry import RetryPolicy


class ProviderResponse(BaseModel):
    data: dict[str, Any]
    tokens: int = 0
    model: str = ""


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, (openai.APITimeoutError, openai.APIConnectionError, openai.RateLimitError)) or (
        isinstance(exc, openai.APIStatusError) and exc.status_code >= 500
    )


def strip_code_fences(raw: str) -> str:
    raw = raw.strip()
    if raw.startswith("```"):
        lines = [line for line in raw.split("\n") if not line.startswith("```")]
        raw = "\n".join(lines)
    return raw


class LLMProvider:
    """One OpenAI-compatible chat completion endpoint."""

    def __init__(
        self,
        name: str,
        api_key: str,
        model: str,
        base_url: str | None = None,
        timeout: float = 30.0,
        retry: RetryPolicy | None = None,
    ):
        self.name = name
        self.model = model
        self.client = AsyncOpenAI(
            api_key=api_key or "missing",
            base_url=base_url,
            timeout=timeout,
            max_retries=0,
        )
        # One attempt by default: the hop to the next provider is the retry.
        self.retry = retry or RetryPolicy(max_attempts=1, retryable=_is_transient)
        self.enabled = bool(api_key)

    async def _create(self, prompt: Prompt, max_tokens: int, temperature: float):
        return await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": prompt.system},
                {"role": "user", "content": prompt.user},
            ],
            max_tokens=max_tokens,
            temperature=temperature,
            response_format={"type": "json_object"},
        )

    async def complete(self, prompt: Prompt, max_tokens: int, temperature: float) -> ProviderResponse:
        if not self.enabled:
            raise ProviderError(self.name, "no API key configured")

        try:
            response = await self.retry.acall(self._create, prompt, max_tokens, temperature)
        except openai.OpenAIError as e:
            raise ProviderError(self.name, str(e)) from e

        raw = (response.choices[0].message.content or "").strip()
        logger.debug("{} raw response: {}", self.name, raw)

        try:
            data = json.loads(strip_code_fences(raw))
        except json.JSONDecodeError as e:
            raise ProviderError(self.name, f"malformed JSON: {e}") from e
        if not isinstance(data, dict):
            raise ProviderError(self.name, "response is not a JSON object")

        tokens = response.usage.total_tokens if response.usage else 0
        return ProviderResponse(data=data, tokens=tokens, model=response.model or self.model)
