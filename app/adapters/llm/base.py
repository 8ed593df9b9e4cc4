from abc import ABC, abstractmethod
from typing import Any


class AbstractLLMClient(ABC):
    """Interface for text-generation providers."""

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        *,
        system: str | None = None,
        **kwargs: Any,
    ) -> str:
        """Generate a completion for ``prompt``.

        Args:
            prompt: User prompt to send to the model.
            system: Optional system instruction.
            **kwargs: Provider-specific options (e.g., temperature, max_tokens).

        Returns:
            str: Generated text, stripped.

        Raises:
            LLMAppError: If the provider call fails or returns no content.
        """
        ...
