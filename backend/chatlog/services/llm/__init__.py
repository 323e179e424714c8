"""Completion provider factory."""

from chatlog.core.config import settings
from chatlog.services.llm.base import CompletionProvider, complete_with_timeout

__all__ = ["CompletionProvider", "complete_with_timeout", "get_completion_provider"]


def get_completion_provider(backend: str | None = None) -> CompletionProvider:
    """Factory function that returns the configured completion backend."""
    backend = backend or settings.completion_backend
    if backend == "http":
        from chatlog.services.llm.http_chat import HttpChatProvider
        return HttpChatProvider()
    elif backend == "chat_completions":
        from chatlog.services.llm.chat_completions import ChatCompletionsProvider
        return ChatCompletionsProvider()
    elif backend == "gemini":
        from chatlog.services.llm.gemini import GeminiProvider
        return GeminiProvider()
    else:
        raise ValueError(f"Unknown completion backend: {backend}")
