"""OpenAI-style chat-completions backend (OpenRouter and compatible APIs)."""

import logging

import httpx

from chatlog.core.config import settings
from chatlog.core.errors import TransientProviderError
from chatlog.services.llm.base import CompletionProvider

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"


class ChatCompletionsProvider(CompletionProvider):
    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
    ):
        self._api_key = api_key or settings.api_key
        self.model = model or settings.model_name
        self.base_url = (base_url or settings.api_url or DEFAULT_BASE_URL).rstrip("/")

    def _headers(self) -> dict[str, str]:
        if not self._api_key or not self.model:
            raise ValueError(
                "Chat completions backend needs CHATLOG_API_KEY and CHATLOG_MODEL_NAME."
            )
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    async def complete(self, prompt: str, instructions: str = "", user: str = "User") -> str:
        messages = []
        if instructions:
            messages.append({"role": "system", "content": instructions})
        messages.append({"role": "user", "content": prompt})

        try:
            async with httpx.AsyncClient() as client:
                resp = await client.post(
                    f"{self.base_url}/chat/completions",
                    headers=self._headers(),
                    json={"model": self.model, "messages": messages},
                )
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPError as e:
            logger.error(f"Chat completions request failed: {e}")
            raise TransientProviderError(f"Chat completions error: {e}") from e

        choices = data.get("choices") or [{}]
        return (choices[0].get("message") or {}).get("content") or ""
