from dataclasses import dataclass
from typing import Optional

from loguru import logger

from core.errors import ProviderUnavailable
from core.models import Priority, ProviderCallEnvelope, TranscriptEntry, UserVoicePreferences
from core.orchestrator import ProcessOptions, RequestOrchestrator
from llm.intent import IntentResult
from llm.service import LanguageService

ACKNOWLEDGEMENT = "I've saved that preference for you!"
HELP_TEMPLATE = (
    "I'm your personal shopping assistant. I can help you find clothes, suggest outfits, "
    "check sizes, or track an order. What are you looking for today?"
)
# Below this the template can't trust the intent and answers with help instead
MIN_TEMPLATE_CONFIDENCE = 0.3


@dataclass
class ResponseResult:
    text: str
    source: str


def _describe_item(entities: dict, preferences: Optional[UserVoicePreferences]) -> str:
    color = entities.get("color")
    if not color and preferences and preferences.color_preferences:
        color = preferences.color_preferences[0]
    category = entities.get("category") or "pieces"
    return f"{color} {category}" if color else category


def _search_product(entities: dict, preferences: Optional[UserVoicePreferences]) -> str:
    item = _describe_item(entities, preferences)
    if not entities.get("color") and preferences and preferences.color_preferences:
        text = f"Since you like {preferences.color_preferences[0]}, I'll start with some {item} for you."
    else:
        text = f"Let me find some {item} for you."
    occasion = entities.get("occasion")
    if occasion:
        text = f"{text} I'll keep it right for a {occasion}."
    return text


def _get_recommendations(entities: dict, preferences: Optional[UserVoicePreferences]) -> str:
    if preferences and preferences.style_preferences:
        return (f"Based on your taste for {preferences.style_preferences[0]}, "
                f"I have a few ideas I think you'll love.")
    occasion = entities.get("occasion")
    if occasion:
        return f"Here are a few outfit ideas that work well for a {occasion}."
    return "I'd love to put together some ideas for you. Is this for a special occasion?"


def _ask_about_size(entities: dict, preferences: Optional[UserVoicePreferences]) -> str:
    brand = entities.get("brand")
    if preferences and preferences.size_preferences:
        if brand and brand in preferences.size_preferences:
            return f"You told me you're a {preferences.size_preferences[brand]} in {brand}, so I'd go with that."
        known_brand, size = next(iter(preferences.size_preferences.items()))
        return f"You're a {size} in {known_brand}. Most brands fit similarly, but I can check the size chart."
    return "I can help with sizing. What size do you usually wear, and in which brand?"


def _add_to_cart(entities: dict, preferences: Optional[UserVoicePreferences]) -> str:
    size = entities.get("size")
    if size:
        return f"Got it, I'll add that in size {size} to your cart."
    return "Sure, I'll add that to your cart. Which size would you like?"


def _return_product(entities: dict, preferences: Optional[UserVoicePreferences]) -> str:
    return "I can help you with a return. Which order is the item from?"


def _track_order(entities: dict, preferences: Optional[UserVoicePreferences]) -> str:
    return "Let me look up your order status. Could you tell me your order number?"


def _save_preference(entities: dict, preferences: Optional[UserVoicePreferences]) -> str:
    return "Thanks for letting me know. I'll keep that in mind when I suggest things."


TEMPLATES = {
    "search_product": _search_product,
    "get_recommendations": _get_recommendations,
    "ask_about_size": _ask_about_size,
    "add_to_cart": _add_to_cart,
    "return_product": _return_product,
    "track_order": _track_order,
    "save_preference": _save_preference,
}


def render_template(intent: IntentResult, preferences: Optional[UserVoicePreferences] = None) -> str:
    """Deterministic response for an intent. Never empty."""
    template = TEMPLATES.get(intent.intent)
    if template is None or intent.confidence < MIN_TEMPLATE_CONFIDENCE:
        return HELP_TEMPLATE
    return template(intent.entities, preferences) or HELP_TEMPLATE


def acknowledge(text: str) -> str:
    return f"{text.rstrip()} {ACKNOWLEDGEMENT}"


class ResponseGenerator:
    """Produces the assistant's reply text for a classified utterance."""

    def __init__(self, language: LanguageService, orchestrator: RequestOrchestrator,
                 timeout: float = 20.0):
        self.language = language
        self.orchestrator = orchestrator
        self.timeout = timeout

    async def generate(
        self,
        text: str,
        intent: IntentResult,
        history: Optional[list[TranscriptEntry]] = None,
        profile: Optional[dict] = None,
        preferences: Optional[UserVoicePreferences] = None,
        preferences_saved: bool = False,
        user_id: Optional[str] = None,
    ) -> ResponseResult:
        history = history or []
        envelope = ProviderCallEnvelope(type="response", payload=text, user_id=user_id,
                                        priority=Priority.HIGH)

        async def work(env: ProviderCallEnvelope) -> str:
            return await self.language.generate_response(
                env.payload, intent.intent, intent.entities, history, profile, preferences
            )

        try:
            reply = await self.orchestrator.process(
                envelope, work, ProcessOptions(service_name="llm", timeout=self.timeout)
            )
            result = ResponseResult(text=reply, source="llm")
        except ProviderUnavailable as e:
            logger.warning("Response generation via LLM failed: {}. Using template.", e)
            result = ResponseResult(text=render_template(intent, preferences), source="template")

        if preferences_saved:
            result.text = acknowledge(result.text)
        return result
