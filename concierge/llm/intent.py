from dataclasses import dataclass, field
from typing import Any, Optional

from loguru import logger

from core.errors import ProviderUnavailable
from core.models import DEFAULT_INTENT, INTENTS, Priority, ProviderCallEnvelope, TranscriptEntry
from core.orchestrator import ProcessOptions, RequestOrchestrator
from llm.intent_rules import RULE_CONFIDENCE, apply_rules
from llm.service import LanguageService

ENTITY_KEYS = ("color", "category", "occasion", "size", "brand", "price_range")


@dataclass
class IntentResult:
    intent: str = DEFAULT_INTENT
    entities: dict[str, Any] = field(default_factory=dict)
    confidence: float = 0.0
    source: str = "rules"


def normalize_intent(label: Any) -> str:
    """Map any provider label onto the closed intent set."""
    if isinstance(label, str):
        value = label.strip().lower().replace(" ", "_").replace("-", "_")
        if value in INTENTS:
            return value
    return DEFAULT_INTENT


def _clean_entities(raw: Any) -> dict[str, Any]:
    if not isinstance(raw, dict):
        return {}
    return {k: v for k, v in raw.items() if k in ENTITY_KEYS and v not in (None, "", [], {})}


def _clamp_confidence(raw: Any, default: float = 0.8) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return default
    return min(1.0, max(0.0, value))


class IntentExtractor:
    """Classifies an utterance into the closed intent set and pulls out entities.

    Uses the language model when it answers; otherwise falls back to the
    keyword rule table, whose confidence never exceeds 0.6.
    """

    def __init__(self, language: LanguageService, orchestrator: RequestOrchestrator,
                 timeout: float = 20.0):
        self.language = language
        self.orchestrator = orchestrator
        self.timeout = timeout

    async def extract(
        self,
        text: str,
        history: Optional[list[TranscriptEntry]] = None,
        profile: Optional[dict] = None,
        user_id: Optional[str] = None,
    ) -> IntentResult:
        history = history or []
        envelope = ProviderCallEnvelope(type="intent", payload=text, user_id=user_id,
                                        priority=Priority.HIGH)

        async def work(env: ProviderCallEnvelope) -> dict:
            return await self.language.extract_intent(env.payload, history, profile)

        try:
            data = await self.orchestrator.process(
                envelope, work, ProcessOptions(service_name="llm", timeout=self.timeout)
            )
        except ProviderUnavailable as e:
            logger.warning("Intent extraction via LLM failed: {}. Using rule table.", e)
            return self.fallback(text)

        result = IntentResult(
            intent=normalize_intent(data.get("intent")),
            entities=_clean_entities(data.get("entities")),
            confidence=_clamp_confidence(data.get("confidence")),
            source="llm",
        )
        logger.info("Intent: {} ({:.2f}) entities={}", result.intent, result.confidence, result.entities)
        return result

    @staticmethod
    def fallback(text: str) -> IntentResult:
        intent, entities, confidence = apply_rules(text)
        return IntentResult(
            intent=intent,
            entities=entities,
            confidence=min(confidence, RULE_CONFIDENCE),
            source="rules",
        )
