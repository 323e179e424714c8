"""Abstract completion provider interface. All backends must implement this."""

import asyncio
from abc import ABC, abstractmethod

from chatlog.core.errors import TransientProviderError


class CompletionProvider(ABC):
    @abstractmethod
    async def complete(self, prompt: str, instructions: str = "", user: str = "User") -> str:
        """Send one prompt and return the reply text.

        Raises TransientProviderError on transport or API failures.
        """
        ...


async def complete_with_timeout(
    provider: CompletionProvider,
    prompt: str,
    timeout: float,
    instructions: str = "",
    user: str = "User",
) -> str:
    """Race the provider against a timer; a timeout is an ordinary provider failure."""
    try:
        return await asyncio.wait_for(
            provider.complete(prompt, instructions=instructions, user=user), timeout
        )
    except asyncio.TimeoutError as e:
        raise TransientProviderError(f"Completion timed out after {timeout}s") from e
