from typing import Optional

from core.models import INTENTS, UserVoicePreferences


def build_system_prompt(store_name: str = "the store") -> str:
    """Build the system prompt for the shopping concierge voice persona."""

    return f"""You are a friendly, knowledgeable personal shopping concierge for {store_name}, speaking with a customer by voice.

Rules:
- Keep responses to 1-3 short, natural sentences; they will be read aloud
- Never use lists, markdown, emojis or URLs
- Use what you know about the customer's sizes, colors, styles and brands when it helps
- If you are unsure what the customer wants, ask one short clarifying question
- Never invent order numbers, prices or stock levels
- Never ask for payment details or passwords"""


def build_intent_prompt() -> str:
    """System prompt for intent and entity extraction (JSON output)."""
    intents = ", ".join(INTENTS)
    return f"""Classify the customer's latest message for a fashion shopping assistant.

Answer with one JSON object with these keys:
- "intent": one of {intents}
- "entities": an object that may contain "color", "category", "occasion", "size", "brand", "price_range"; omit keys you cannot find
- "confidence": a number between 0 and 1

Use "general_question" when nothing else fits."""


def build_summary_prompt(target_size: int) -> str:
    return f"""Summarize the following shopping conversation for the assistant's own memory.
Keep the customer's stated needs, sizes, colors, brands, budget and any open requests.
Write at most {max(1, target_size)} short sentences in plain prose."""


def describe_profile(profile: Optional[dict], preferences: Optional[UserVoicePreferences]) -> str:
    """Render known customer facts as a short prompt section. Empty if nothing is known."""
    lines = []
    if profile:
        name = profile.get("name") or profile.get("first_name")
        if name:
            lines.append(f"Customer name: {name}")
    if preferences is not None and not preferences.is_empty:
        if preferences.size_preferences:
            sizes = ", ".join(f"{size} in {brand}" for brand, size in preferences.size_preferences.items())
            lines.append(f"Sizes: {sizes}")
        if preferences.color_preferences:
            lines.append(f"Favorite colors: {', '.join(preferences.color_preferences)}")
        if preferences.style_preferences:
            lines.append(f"Styles: {', '.join(preferences.style_preferences)}")
        if preferences.brand_preferences:
            lines.append(f"Brands: {', '.join(preferences.brand_preferences)}")
    if not lines:
        return ""
    return "What you know about this customer:\n" + "\n".join(f"- {line}" for line in lines)
