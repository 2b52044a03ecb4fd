import re
from typing import Any, Iterable, Optional

from loguru import logger

from core.models import UserVoicePreferences, now_ms
from llm.intent_rules import CATEGORIES, SIZE_WORD, normalize_size
from storage.cache import SessionCache
from storage.profile_store import ProfileStore

# "I'm a medium in Acme", "I wear a size 8 from Zara", "my size is L for Levi's"
_SIZE_FOR_BRAND = re.compile(
    rf"\b(?:i'?m|i am|i wear|i usually wear|wear|my size is)\s+(?:a\s+|an\s+)?(?:size\s+)?"
    rf"({SIZE_WORD})\s+(?:in|for|with|from|at)\s+",
    re.I,
)
# "use a male voice", "I prefer Rachel's voice"
_VOICE_CHOICE = re.compile(
    r"\b(?:use|prefer|want|like)\s+(?:a\s+|an\s+|the\s+)?([a-z]+)(?:['’]s)?\s+voice\b",
    re.I,
)
_BRAND_STOP_WORDS = {
    "and", "but", "or", "so", "too", "also", "please", "usually", "normally",
    "brand", "clothes", "clothing", "stuff", "sizes", "size", "though", "because",
}
MAX_BRAND_WORDS = 3


def preferences_key(user_id: str) -> str:
    """Durable store key for a user's merged preferences."""
    return f"{user_id}-voice-preferences"


def preferences_cache_key(user_id: str) -> str:
    return f"voice-preferences:{user_id}"


def preferences_log_key(user_id: str) -> str:
    return f"{user_id}-preferences-log"


def profile_key(user_id: str) -> str:
    return f"{user_id}-profile"


def _titlecase_brand(brand: str) -> str:
    if brand != brand.lower():
        return brand
    return " ".join(word[:1].upper() + word[1:] for word in brand.split())


def _read_brand(text: str) -> Optional[str]:
    """Take the brand name at the start of ``text``: up to punctuation or a stop word."""
    clause = re.match(r"[^,.;!?]*", text).group(0)
    words = []
    for word in clause.split():
        lowered = word.lower()
        if lowered in _BRAND_STOP_WORDS or lowered in CATEGORIES:
            break
        if not words and lowered == "the":
            continue
        words.append(word)
        if len(words) == MAX_BRAND_WORDS:
            break
    if not words:
        return None
    return _titlecase_brand(" ".join(words))


def detect_explicit_preferences(text: str, voice_catalog: dict[str, str]) -> UserVoicePreferences:
    """Preferences the user states outright: size-for-brand and voice choice."""
    prefs = UserVoicePreferences()

    for match in _SIZE_FOR_BRAND.finditer(text):
        size = normalize_size(match.group(1))
        brand = _read_brand(text[match.end():])
        if size and brand:
            prefs.size_preferences[brand] = size

    voice_match = _VOICE_CHOICE.search(text)
    if voice_match:
        voice_id = voice_catalog.get(voice_match.group(1).lower())
        if voice_id:
            prefs.voice_preference = voice_id
        else:
            logger.debug("Unknown voice requested: '{}'", voice_match.group(1))

    return prefs


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if v]
    return [str(value)]


def preferences_from_entities(entities: dict[str, Any]) -> UserVoicePreferences:
    """Implicit preferences carried by extracted entities."""
    prefs = UserVoicePreferences(
        color_preferences=_as_list(entities.get("color")),
        style_preferences=_as_list(entities.get("category")),
        brand_preferences=_as_list(entities.get("brand")),
    )
    size, brand = entities.get("size"), entities.get("brand")
    if isinstance(size, str) and isinstance(brand, str) and brand:
        normalized = normalize_size(size) or size.upper()
        prefs.size_preferences[brand] = normalized
    return prefs


def _union(first: Iterable[str], second: Iterable[str]) -> list[str]:
    seen = set()
    merged = []
    for value in list(first) + list(second):
        key = value.strip().lower()
        if key and key not in seen:
            seen.add(key)
            merged.append(value)
    return merged


def merge_preferences(existing: UserVoicePreferences, incoming: UserVoicePreferences) -> UserVoicePreferences:
    """Combine two preference sets without mutating either.

    Size map merges key-wise with ``incoming`` winning; lists are unioned
    case-insensitively in first-seen order. Applying the same delta twice
    gives the same result as applying it once.
    """
    return UserVoicePreferences(
        voice_preference=incoming.voice_preference or existing.voice_preference,
        size_preferences={**existing.size_preferences, **incoming.size_preferences},
        color_preferences=_union(existing.color_preferences, incoming.color_preferences),
        style_preferences=_union(existing.style_preferences, incoming.style_preferences),
        brand_preferences=_union(existing.brand_preferences, incoming.brand_preferences),
    )


def preferences_from_profile(profile: Optional[dict]) -> Optional[UserVoicePreferences]:
    if not isinstance(profile, dict):
        return None
    nested = profile.get("preferences") or {}
    if not (profile.get("voice_preference") or profile.get("size_preferences") or nested):
        return None
    return UserVoicePreferences(
        voice_preference=profile.get("voice_preference"),
        size_preferences=profile.get("size_preferences") or {},
        color_preferences=_as_list(nested.get("favorite_colors")),
        style_preferences=_as_list(nested.get("preferred_styles")),
        brand_preferences=_as_list(nested.get("preferred_brands")),
    )


class PreferenceManager:
    """Reads and writes a user's merged preferences through cache and durable store."""

    def __init__(self, cache: SessionCache, store: ProfileStore, cache_ttl: int = 86400):
        self.cache = cache
        self.store = store
        self.cache_ttl = cache_ttl

    async def get(self, user_id: str) -> UserVoicePreferences:
        """Cache, then durable store, then the user profile, then empty."""
        try:
            cached = await self.cache.get(preferences_cache_key(user_id))
        except Exception as e:
            logger.warning("Preference cache read failed for {}: {}", user_id, e)
            cached = None
        if cached:
            return UserVoicePreferences.model_validate(cached)

        stored = await self.store.get(preferences_key(user_id))
        if isinstance(stored, dict):
            prefs = UserVoicePreferences.model_validate(stored)
        else:
            prefs = preferences_from_profile(await self.store.get(profile_key(user_id)))
            if prefs is None:
                return UserVoicePreferences()

        await self._cache(user_id, prefs)
        return prefs

    async def save(self, user_id: str, delta: UserVoicePreferences) -> tuple[UserVoicePreferences, bool]:
        """Merge ``delta`` into the stored preferences. Returns ``(merged, changed)``."""
        existing = await self.get(user_id)
        merged = merge_preferences(existing, delta)
        if merged == existing:
            return existing, False

        payload = merged.model_dump()
        await self.store.set(preferences_key(user_id), payload)
        await self._cache(user_id, merged)
        await self.store.append(preferences_log_key(user_id), {
            "preferences": payload,
            "timestamp": now_ms(),
        })
        logger.info("Saved preferences for user {}: {}", user_id, delta.model_dump(exclude_defaults=True))
        return merged, True

    async def _cache(self, user_id: str, prefs: UserVoicePreferences) -> None:
        try:
            await self.cache.set(preferences_cache_key(user_id), prefs.model_dump(), self.cache_ttl)
        except Exception as e:
            logger.warning("Preference cache write failed for {}: {}", user_id, e)
