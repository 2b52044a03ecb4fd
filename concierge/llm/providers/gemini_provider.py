from loguru import logger

from core.errors import ProviderUnavailable
from llm.base import BaseLLM


class GeminiProvider(BaseLLM):
    """Google Gemini provider."""

    name = "gemini"

    def __init__(self, api_key: str, model: str = "gemini-1.5-flash"):
        self.api_key = api_key
        self.model = model
        self._client = None

    def _ensure_client(self):
        if self._client is None:
            import google.generativeai as genai
            genai.configure(api_key=self.api_key)
            self._client = genai.GenerativeModel(self.model)

    async def complete(self, messages: list[dict], max_tokens: int = 300,
                       temperature: float = 0.4, json_mode: bool = False) -> str:
        if not self.api_key:
            raise ProviderUnavailable(self.name, "API key not configured")

        self._ensure_client()

        # Gemini takes a list of {"role": "user"/"model", "parts": [text]}
        system_msg = ""
        gemini_history = []
        for msg in messages:
            if msg["role"] == "system":
                system_msg = msg["content"]
            elif msg["role"] == "user":
                gemini_history.append({"role": "user", "parts": [msg["content"]]})
            elif msg["role"] == "assistant":
                gemini_history.append({"role": "model", "parts": [msg["content"]]})

        # No system role here: prepend it to the first user message
        if system_msg and gemini_history:
            first = gemini_history[0]
            first["parts"] = [f"{system_msg}\n\n{first['parts'][0]}"]

        if len(gemini_history) > 1:
            chat = self._client.start_chat(history=gemini_history[:-1])
            last_msg = gemini_history[-1]["parts"][0]
        else:
            chat = self._client.start_chat()
            last_msg = gemini_history[0]["parts"][0] if gemini_history else system_msg

        generation_config = {
            "max_output_tokens": max_tokens,
            "temperature": temperature,
        }
        if json_mode:
            generation_config["response_mime_type"] = "application/json"

        try:
            response = await chat.send_message_async(last_msg, generation_config=generation_config)
            text = response.text
        except Exception as e:
            logger.error("Gemini completion error: {}", e)
            raise ProviderUnavailable(self.name, str(e))

        if not text:
            raise ProviderUnavailable(self.name, "empty completion")
        return text
