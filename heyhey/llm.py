import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI, OpenAIError

from .config import (
    OPENAI_API_KEY,
    OPENAI_MAX_TOKENS,
    OPENAI_MODEL,
    OPENAI_TEMPERATURE,
    OPENAI_TIMEOUT_SECONDS,
)

log = logging.getLogger(__name__)


@dataclass
class Completion:
    text: str
    usage: Optional[Dict[str, Any]] = None


class LLMClient:
    """Thin wrapper over OpenAI chat completions with the configured model settings."""

    def __init__(self, api_key: str | None = None, model: str | None = None):
        self.api_key = OPENAI_API_KEY if api_key is None else api_key
        self.model = model or OPENAI_MODEL
        self._client: Optional[AsyncOpenAI] = None

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.api_key, timeout=OPENAI_TIMEOUT_SECONDS)
        return self._client

    async def complete(self, system_prompt: str, messages: List[Dict[str, str]]) -> Completion:
        """Run one chat completion; raises OpenAIError (or RuntimeError when unconfigured)."""
        if not self.configured:
            raise RuntimeError("OPENAI_API_KEY is not configured")
        result = await self._get_client().chat.completions.create(
            model=self.model,
            messages=[{"role": "system", "content": system_prompt}, *messages],
            max_tokens=OPENAI_MAX_TOKENS,
            temperature=OPENAI_TEMPERATURE,
        )
        text = ""
        if result.choices:
            text = (result.choices[0].message.content or "").strip()
        usage = result.usage.model_dump() if result.usage is not None else None
        return Completion(text=text, usage=usage)

    async def reply(self, system_prompt: str, user_message: str) -> Optional[str]:
        """Single-turn reply; errors are logged and produce None."""
        if not self.configured:
            return None
        try:
            completion = await self.complete(system_prompt, [{"role": "user", "content": user_message}])
        except (OpenAIError, RuntimeError) as exc:
            log.error("AI response failed: %s", exc)
            return None
        return completion.text or None
