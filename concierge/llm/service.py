import json
import re
from typing import Any, Optional

from loguru import logger

from core.errors import ProviderUnavailable
from core.models import Speaker, TranscriptEntry, UserVoicePreferences, now_ms
from llm.base import LLMRouter
from llm.prompts import build_intent_prompt, build_summary_prompt, build_system_prompt, describe_profile

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


def parse_json_object(raw: str) -> dict:
    """Parse a model reply that should hold one JSON object.

    Tolerates code fences and prose around the object.
    """
    text = _FENCE.sub("", raw.strip())
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            raise
        data = json.loads(text[start:end + 1])
    if not isinstance(data, dict):
        raise json.JSONDecodeError("expected a JSON object", text, 0)
    return data


def history_to_messages(history: list[TranscriptEntry], limit: int) -> list[dict]:
    """Convert the last ``limit`` transcript entries to chat messages.

    Summary entries become system context rather than dialogue.
    """
    messages = []
    for entry in history[-limit:] if limit > 0 else []:
        if entry.summary or entry.role == Speaker.SYSTEM:
            messages.append({"role": "system", "content": f"Earlier in this conversation: {entry.message}"})
        else:
            messages.append({"role": entry.role.value, "content": entry.message})
    return messages


class LanguageService:
    """Shopping-domain operations over the active language model."""

    def __init__(self, router: LLMRouter, history_turns: int = 6):
        self.router = router
        self.history_turns = history_turns

    async def extract_intent(
        self,
        text: str,
        history: list[TranscriptEntry],
        profile: Optional[dict] = None,
    ) -> dict[str, Any]:
        """Raw provider classification: ``{intent, entities, confidence}``.

        Labels are not validated here; callers map them onto the closed set.
        """
        system = build_intent_prompt()
        context = describe_profile(profile, None)
        if context:
            system = f"{system}\n\n{context}"

        messages = [{"role": "system", "content": system}]
        messages.extend(history_to_messages(history, self.history_turns))
        messages.append({"role": "user", "content": text})

        raw = await self.router.complete(messages, max_tokens=200, temperature=0.0, json_mode=True)
        try:
            data = parse_json_object(raw)
        except json.JSONDecodeError as e:
            raise ProviderUnavailable("llm", f"unparseable intent reply: {e}")
        logger.debug("[LLM] intent reply: {}", data)
        return data

    async def generate_response(
        self,
        text: str,
        intent: str,
        entities: dict[str, Any],
        history: list[TranscriptEntry],
        profile: Optional[dict] = None,
        preferences: Optional[UserVoicePreferences] = None,
    ) -> str:
        system = build_system_prompt()
        context = describe_profile(profile, preferences)
        if context:
            system = f"{system}\n\n{context}"
        system = f"{system}\n\nThe customer's request was classified as '{intent}'"
        if entities:
            system = f"{system} with details {json.dumps(entities)}"

        messages = [{"role": "system", "content": system}]
        messages.extend(history_to_messages(history, self.history_turns))
        messages.append({"role": "user", "content": text})

        reply = (await self.router.complete(messages, max_tokens=200, temperature=0.6)).strip()
        if not reply:
            raise ProviderUnavailable("llm", "empty response")
        return reply

    async def summarize(self, entries: list[TranscriptEntry], target_size: int) -> dict[str, Any]:
        """Condense entries into ``{summary, timestamp}``."""
        lines = []
        for entry in entries:
            speaker = "Earlier summary" if entry.summary else entry.role.value.capitalize()
            lines.append(f"{speaker}: {entry.message}")

        messages = [
            {"role": "system", "content": build_summary_prompt(target_size)},
            {"role": "user", "content": "\n".join(lines)},
        ]
        summary = (await self.router.complete(messages, max_tokens=300, temperature=0.2)).strip()
        if not summary:
            raise ProviderUnavailable("llm", "empty summary")
        return {"summary": summary, "timestamp": now_ms()}
