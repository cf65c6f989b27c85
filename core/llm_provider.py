"""
LLM provider abstraction
Every backend exposes the same two capabilities, the pipeline only sees this interface
"""
import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional

from config.settings import LLM_PROVIDERS, LLM_PROVIDER_NAMES

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], None]


class LLMProvider(ABC):
    """Common interface of the Ollama, OpenAI and Codex CLI backends"""

    # Provider identifier recorded in the usage ledger
    name: str = ""

    @property
    def display_name(self) -> str:
        return LLM_PROVIDER_NAMES.get(self.name, self.name)

    @abstractmethod
    async def query_stream(self, model: str, prompt: str,
                           on_chunk: Optional[ChunkCallback] = None) -> str:
        """
        Send a prompt and stream the answer

        Args:
            model: model name
            prompt: full prompt text
            on_chunk: called with every incremental piece of output

        Returns:
            the concatenated answer

        Raises:
            ProviderUnavailable, ProviderTimeout, EmptyResponse, ProviderError
        """

    @abstractmethod
    async def check_availability(self, model: str) -> bool:
        """Whether the backend can serve the model"""


def create_provider(settings) -> LLMProvider:
    """Build the provider selected by ``settings.llm_provider``"""
    provider = settings.llm_provider

    if provider == LLM_PROVIDERS["OLLAMA"]:
        from core.ollama_client import OllamaProvider
        return OllamaProvider(settings.ollama_url, settings.ollama_timeout_seconds)

    if provider == LLM_PROVIDERS["OPENAI"]:
        from core.openai_client import OpenAIProvider
        return OpenAIProvider(
            api_key=settings.openai_api_key,
            base_url=settings.openai_api_base,
            timeout_seconds=settings.openai_timeout_seconds,
        )

    if provider == LLM_PROVIDERS["CODEX"]:
        from core.codex_client import CodexCliProvider
        return CodexCliProvider(settings.codex_cli_path, settings.codex_timeout_seconds)

    raise ValueError(f"Unknown LLM provider: {provider}")
