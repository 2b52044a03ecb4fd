"""Keyword rule table used when the language model is unavailable.

Pure data plus pure functions: no provider access, no state. Rules are
checked in order and the first match wins.
"""

import re
from typing import Any, Optional

from core.models import DEFAULT_INTENT

RULE_CONFIDENCE = 0.6
NO_MATCH_CONFIDENCE = 0.3

INTENT_RULES: list[tuple[str, re.Pattern]] = [
    ("track_order", re.compile(
        r"\b(track|tracking|where('s| is)|status of|when will)\b.*\b(order|package|parcel|delivery|shipment)\b"
        r"|\border\s+(status|number)\b", re.I)),
    ("return_product", re.compile(
        r"\b(return|refund|exchange|send (it|this|them) back)\b", re.I)),
    ("save_preference", re.compile(
        r"\b(remember|save|note)\b.*\b(size|color|colour|brand|style|prefer)"
        r"|\bi('m| am) (a |an )?(size )?(xxs|xs|s|m|l|xl|xxl|small|medium|large|extra small|extra large|petite|plus|\d{1,2})\b"
        r"|\bmy (favou?rite|preferred) (color|colour|brand|style)\b"
        r"|\b(use|prefer|want|like) (a |the )?\w+('s)? voice\b", re.I)),
    ("add_to_cart", re.compile(
        r"\b(add|put)\b.*\b(cart|bag|basket)\b|\b(buy|purchase|order) (it|this|that|these|those|one)\b", re.I)),
    ("ask_about_size", re.compile(
        r"\b(what size|which size|size chart|sizing|fit me|run(s)? (small|large|big|true)|true to size)\b", re.I)),
    ("get_recommendations", re.compile(
        r"\b(recommend|suggest|recommendation|suggestion|what should i wear|go(es)? with|match(es)? with|ideas?)\b", re.I)),
    ("search_product", re.compile(
        r"\b(show|find|looking for|search|need|want|have you got|do you have|browse)\b", re.I)),
]

COLORS = [
    "black", "white", "red", "blue", "navy", "green", "olive", "yellow", "orange",
    "pink", "purple", "brown", "beige", "tan", "grey", "gray", "gold", "silver",
    "cream", "burgundy", "teal",
]

# Plural or alternate form -> canonical category
CATEGORIES = {
    "dress": "dress", "dresses": "dress",
    "shirt": "shirt", "shirts": "shirt", "blouse": "blouse", "blouses": "blouse",
    "t-shirt": "t-shirt", "t-shirts": "t-shirt", "tee": "t-shirt", "tees": "t-shirt",
    "top": "top", "tops": "top",
    "jacket": "jacket", "jackets": "jacket", "coat": "coat", "coats": "coat",
    "sweater": "sweater", "sweaters": "sweater", "hoodie": "hoodie", "hoodies": "hoodie",
    "jeans": "jeans", "pants": "pants", "trousers": "pants", "shorts": "shorts",
    "skirt": "skirt", "skirts": "skirt", "suit": "suit", "suits": "suit",
    "shoe": "shoes", "shoes": "shoes", "sneaker": "sneakers", "sneakers": "sneakers",
    "boot": "boots", "boots": "boots", "heels": "heels", "sandals": "sandals",
    "bag": "bag", "bags": "bag", "handbag": "bag",
}

OCCASIONS = {
    "wedding": "wedding", "weddings": "wedding",
    "party": "party", "parties": "party",
    "work": "business", "office": "business", "business": "business", "interview": "business",
    "casual": "casual", "weekend": "casual",
    "date": "date", "vacation": "vacation", "holiday": "vacation", "beach": "vacation",
    "gym": "workout", "workout": "workout", "formal": "formal", "gala": "formal",
}

SIZE_ALIASES = {
    "xxs": "XXS", "xs": "XS", "extra small": "XS", "petite": "XS",
    "s": "S", "small": "S",
    "m": "M", "medium": "M",
    "l": "L", "large": "L",
    "xl": "XL", "extra large": "XL",
    "xxl": "XXL", "plus": "XXL",
}

SIZE_WORD = r"(?:xxs|xxl|xs|xl|extra small|extra large|small|medium|large|petite|plus|s|m|l|\d{1,2})"

_SIZE_IN_TEXT = re.compile(rf"\bsize\s+({SIZE_WORD})\b|\b(?:i'?m|i am)\s+(?:a |an )?({SIZE_WORD})\b", re.I)
_BRAND = re.compile(r"\b(?:from|by|in)\s+([A-Z][\w&'-]*(?:\s+[A-Z][\w&'-]*)*)")
_PRICE_UNDER = re.compile(r"\b(?:under|below|less than|max(?:imum)?|up to)\s+\$?(\d+)", re.I)
_PRICE_BETWEEN = re.compile(r"\bbetween\s+\$?(\d+)\s+and\s+\$?(\d+)", re.I)


def normalize_size(raw: str) -> Optional[str]:
    """Map a spoken size to XXS-XXL, or keep a numeric size as-is."""
    value = raw.strip().lower()
    if value.isdigit():
        return value
    return SIZE_ALIASES.get(value)


def classify(text: str) -> str:
    for intent, pattern in INTENT_RULES:
        if pattern.search(text):
            return intent
    return DEFAULT_INTENT


def extract_entities(text: str) -> dict[str, Any]:
    entities: dict[str, Any] = {}
    words = re.findall(r"[a-z][a-z'-]*", text.lower())
    word_set = set(words)

    for color in COLORS:
        if color in word_set:
            entities["color"] = color
            break

    for word in words:
        if word in CATEGORIES:
            entities["category"] = CATEGORIES[word]
            break

    for word in words:
        if word in OCCASIONS:
            entities["occasion"] = OCCASIONS[word]
            break

    size_match = _SIZE_IN_TEXT.search(text)
    if size_match:
        size = normalize_size(size_match.group(1) or size_match.group(2))
        if size:
            entities["size"] = size

    brand_match = _BRAND.search(text)
    if brand_match:
        entities["brand"] = brand_match.group(1)

    between = _PRICE_BETWEEN.search(text)
    under = _PRICE_UNDER.search(text)
    if between:
        entities["price_range"] = {"min": int(between.group(1)), "max": int(between.group(2))}
    elif under:
        entities["price_range"] = {"max": int(under.group(1))}

    return entities


def apply_rules(text: str) -> tuple[str, dict[str, Any], float]:
    """Classify text with the rule table: ``(intent, entities, confidence)``."""
    intent = classify(text)
    confidence = RULE_CONFIDENCE if intent != DEFAULT_INTENT else NO_MATCH_CONFIDENCE
    return intent, extract_entities(text), confidence
