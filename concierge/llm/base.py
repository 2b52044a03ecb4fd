from abc import ABC, abstractmethod

from loguru import logger

from core.config import ConfigManager
from core.errors import ProviderUnavailable


class BaseLLM(ABC):
    """Abstract base class for cloud language model providers."""

    name: str = "llm"
    api_key: str = ""

    @abstractmethod
    async def complete(
        self,
        messages: list[dict],
        max_tokens: int = 300,
        temperature: float = 0.4,
        json_mode: bool = False,
    ) -> str:
        """Return the full completion text for a chat transcript.

        Args:
            messages: List of message dicts with "role" and "content" keys.
            json_mode: Ask the model to answer with a single JSON object.

        Raises:
            ProviderUnavailable: on a missing key or any API failure.
        """
        ...


class LLMRouter:
    """Routes LLM requests to the provider selected in config."""

    def __init__(self, config_manager: ConfigManager):
        self.config_manager = config_manager
        self._providers: dict[str, BaseLLM] = {}

    def _get_online_provider(self, name: str) -> BaseLLM:
        """Get or create a cloud LLM provider.

        Re-reads the API key from config each time so that key updates take
        effect without restart.
        """
        config = self.config_manager.config
        current_key = getattr(config.api_keys, name, "")

        # Recreate the provider if the key changed or first time
        cached = self._providers.get(name)
        if cached is not None and getattr(cached, "api_key", None) == current_key:
            return cached

        if name == "openai":
            from llm.providers.openai_provider import OpenAIProvider
            self._providers[name] = OpenAIProvider(api_key=current_key, model=config.provider.openai_model)
        elif name == "gemini":
            from llm.providers.gemini_provider import GeminiProvider
            self._providers[name] = GeminiProvider(api_key=current_key, model=config.provider.gemini_model)
        elif name == "claude":
            from llm.providers.claude_provider import ClaudeProvider
            self._providers[name] = ClaudeProvider(api_key=current_key, model=config.provider.claude_model)
        else:
            raise ProviderUnavailable("llm", f"unknown provider '{name}'")

        logger.info("LLM provider '{}' initialized.", name)
        return self._providers[name]

    def get_provider(self) -> BaseLLM:
        """Get the active LLM provider based on current settings."""
        return self._get_online_provider(self.config_manager.config.provider.llm)

    async def complete(self, messages: list[dict], **kwargs) -> str:
        provider = self.get_provider()
        logger.debug("[LLM] Using provider: {}", provider.name)
        return await provider.complete(messages, **kwargs)
