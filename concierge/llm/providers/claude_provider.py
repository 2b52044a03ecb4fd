from loguru import logger

from core.errors import ProviderUnavailable
from llm.base import BaseLLM


class ClaudeProvider(BaseLLM):
    """Anthropic Claude provider."""

    name = "claude"

    def __init__(self, api_key: str, model: str = "claude-haiku-4-5-20251001"):
        self.api_key = api_key
        self.model = model
        self._client = None

    def _ensure_client(self):
        if self._client is None:
            from anthropic import AsyncAnthropic
            self._client = AsyncAnthropic(api_key=self.api_key)

    async def complete(self, messages: list[dict], max_tokens: int = 300,
                       temperature: float = 0.4, json_mode: bool = False) -> str:
        if not self.api_key:
            raise ProviderUnavailable(self.name, "API key not configured")

        self._ensure_client()

        # Separate system message from conversation
        system_msg = ""
        conversation = []
        for msg in messages:
            if msg["role"] == "system":
                system_msg = msg["content"]
            else:
                conversation.append(msg)
        if json_mode:
            system_msg = f"{system_msg}\n\nRespond with a single JSON object and nothing else."

        try:
            response = await self._client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                temperature=temperature,
                system=system_msg,
                messages=conversation,
            )
        except Exception as e:
            logger.error("Claude completion error: {}", e)
            raise ProviderUnavailable(self.name, str(e))

        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        if not text:
            raise ProviderUnavailable(self.name, "empty completion")
        return text
