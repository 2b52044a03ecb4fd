import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


INTENTS = (
    "search_product",
    "get_recommendations",
    "ask_about_size",
    "add_to_cart",
    "return_product",
    "track_order",
    "save_preference",
    "general_question",
)
DEFAULT_INTENT = "general_question"


def now_ms() -> int:
    return int(time.time() * 1000)


class Speaker(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"  # summaries only


class Priority(str, Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


class TranscriptEntry(BaseModel):
    """One line of the durable, append-only conversation log."""

    role: Speaker
    message: str
    timestamp: int = Field(default_factory=now_ms)
    intent: Optional[str] = None
    entities: dict[str, Any] = Field(default_factory=dict)
    source: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    # Summary entries stand in for a prefix of older entries and are never
    # fed back into summarization as raw dialogue.
    summary: bool = False

    @property
    def is_dialogue(self) -> bool:
        return not self.summary and self.role != Speaker.SYSTEM


class UserVoicePreferences(BaseModel):
    voice_preference: Optional[str] = None
    size_preferences: dict[str, str] = Field(default_factory=dict)  # brand -> size
    color_preferences: list[str] = Field(default_factory=list)
    style_preferences: list[str] = Field(default_factory=list)
    brand_preferences: list[str] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (
            self.voice_preference
            or self.size_preferences
            or self.color_preferences
            or self.style_preferences
            or self.brand_preferences
        )


@dataclass
class ProviderCallEnvelope:
    """Unit of work handed to the request orchestrator."""

    type: str
    payload: Any = None
    user_id: Optional[str] = None
    dedupe_key: Optional[str] = None
    priority: Priority = Priority.NORMAL
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: int = field(default_factory=now_ms)
