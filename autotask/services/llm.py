"""Language-model provider.

The engine only needs two calls: free text out, or a JSON object out. Any
OpenAI-compatible chat-completions endpoint can serve both.
"""
import asyncio
import json
import re
from typing import Any, Protocol

import aiohttp
from loguru import logger

logger = logger.bind(module="services.llm")

_CODE_FENCE = re.compile(r"^```(?:json|html)?\s*|\s*```$", re.IGNORECASE)


class LLMError(Exception):
    """The provider failed, timed out or returned an unusable answer."""


class LLMProvider(Protocol):
    """Protocol for language-model access."""

    async def generate_text(
        self,
        prompt: str,
        *,
        system: str | None = None,
        temperature: float | None = None,
    ) -> str:
        """Return the model's free-text answer."""
        ...

    async def generate_json(
        self,
        prompt: str,
        *,
        system: str | None = None,
        temperature: float | None = None,
    ) -> Any:
        """Return the model's answer parsed as JSON."""
        ...


def strip_code_fences(text: str) -> str:
    """Drop a surrounding markdown code fence, if any."""
    return _CODE_FENCE.sub("", text.strip()).strip()


def parse_json_answer(text: str) -> Any:
    """Parse a model answer as JSON.

    Raises:
        LLMError: If the answer is not valid JSON
    """
    try:
        return json.loads(strip_code_fences(text))
    except json.JSONDecodeError as e:
        raise LLMError(f"Model returned invalid JSON: {e}") from e


class OpenAICompatibleProvider:
    """LLM provider for OpenAI-compatible chat-completions APIs.

    Implements the LLMProvider protocol.
    """

    def __init__(
        self,
        api_key: str | None,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        temperature: float = 0.2,
        timeout_seconds: float = 60.0,
        max_tokens: int = 4096,
    ):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._api_key = api_key
        self._url = base_url.rstrip("/") + "/chat/completions"
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def _complete(
        self,
        prompt: str,
        system: str | None,
        temperature: float | None,
        json_mode: bool,
    ) -> str:
        if not self._api_key:
            raise LLMError("No API key configured for the language-model provider")

        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        body: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature if temperature is None else temperature,
        }
        if json_mode:
            body["response_format"] = {"type": "json_object"}

        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.post(self._url, json=body, headers=headers) as resp:
                    if resp.status >= 400:
                        detail = (await resp.text())[:300]
                        raise LLMError(f"LLM request failed with status {resp.status}: {detail}")
                    data = await resp.json()
        except aiohttp.ClientError as e:
            raise LLMError(f"LLM request failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise LLMError("LLM request timed out") from e

        try:
            content = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise LLMError(f"Unexpected LLM response shape: {e}") from e

        logger.debug(f"LLM answered with {len(content)} chars")
        return content

    async def generate_text(
        self,
        prompt: str,
        *,
        system: str | None = None,
        temperature: float | None = None,
    ) -> str:
        text = await self._complete(prompt, system, temperature, json_mode=False)
        return strip_code_fences(text)

    async def generate_json(
        self,
        prompt: str,
        *,
        system: str | None = None,
        temperature: float | None = None,
    ) -> Any:
        text = await self._complete(prompt, system, temperature, json_mode=True)
        return parse_json_answer(text)
