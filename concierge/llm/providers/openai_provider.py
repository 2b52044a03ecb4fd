from loguru import logger

from core.errors import ProviderUnavailable
from llm.base import BaseLLM


class OpenAIProvider(BaseLLM):
    """OpenAI ChatGPT provider."""

    name = "openai"

    def __init__(self, api_key: str, model: str = "gpt-4o-mini"):
        self.api_key = api_key
        self.model = model
        self._client = None

    def _ensure_client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self.api_key)

    async def complete(self, messages: list[dict], max_tokens: int = 300,
                       temperature: float = 0.4, json_mode: bool = False) -> str:
        if not self.api_key:
            raise ProviderUnavailable(self.name, "API key not configured")

        self._ensure_client()

        kwargs = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=max_tokens,
                temperature=temperature,
                **kwargs,
            )
        except Exception as e:
            logger.error("OpenAI completion error: {}", e)
            raise ProviderUnavailable(self.name, str(e))

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise ProviderUnavailable(self.name, "empty completion")
        return content
