"""Google Gemini completion backend."""

from google import genai
from google.genai import errors, types

from chatlog.core.config import settings
from chatlog.core.errors import TransientProviderError
from chatlog.services.llm.base import CompletionProvider


class GeminiProvider(CompletionProvider):
    def __init__(self):
        self.client = genai.Client(api_key=settings.gemini_api_key)
        self.model = settings.gemini_model

    async def complete(self, prompt: str, instructions: str = "", user: str = "User") -> str:
        config = types.GenerateContentConfig(system_instruction=instructions or None)
        try:
            response = await self.client.aio.models.generate_content(
                model=self.model,
                contents=prompt,
                config=config,
            )
        except errors.APIError as e:
            raise TransientProviderError(f"Gemini error: {e}") from e
        return response.text or ""
