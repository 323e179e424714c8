"""Plain HTTP chat backend: POST {context, message, user, rules} -> {reply}."""

import logging

import httpx

from chatlog.core.config import settings
from chatlog.core.errors import TransientProviderError
from chatlog.services.llm.base import CompletionProvider

logger = logging.getLogger(__name__)


class HttpChatProvider(CompletionProvider):
    def __init__(self, api_url: str | None = None):
        self.api_url = (api_url or settings.api_url).strip().rstrip("/")

    async def complete(self, prompt: str, instructions: str = "", user: str = "User") -> str:
        if not self.api_url:
            raise ValueError("Chat backend URL not configured. Set CHATLOG_API_URL.")

        payload = {"context": [], "message": prompt, "user": user, "rules": instructions}
        try:
            async with httpx.AsyncClient() as client:
                resp = await client.post(
                    f"{self.api_url}/chat",
                    headers={"Accept": "application/json"},
                    json=payload,
                )
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPError as e:
            logger.error(f"Chat backend request failed: {e}")
            raise TransientProviderError(f"Chat backend error: {e}") from e

        reply = data.get("reply") or ""
        if not reply.strip():
            logger.warning("Empty reply from chat backend")
        return reply
