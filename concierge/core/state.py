import base64
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import BaseModel, Field

from core.config import VoiceConfig
from core.models import UserVoicePreferences, now_ms


class VoiceSettings(BaseModel):
    voice_id: str
    model_id: str
    stability: float = 0.5
    similarity_boost: float = 0.8
    style: Optional[float] = None
    use_speaker_boost: Optional[bool] = None

    @classmethod
    def from_config(cls, voice: VoiceConfig, voice_id: Optional[str] = None) -> "VoiceSettings":
        return cls(
            voice_id=voice_id or voice.default_voice_id,
            model_id=voice.model_id,
            stability=voice.stability,
            similarity_boost=voice.similarity_boost,
            style=voice.style,
            use_speaker_boost=voice.use_speaker_boost,
        )


def new_conversation_id(user_id: str) -> str:
    return f"conv_{user_id}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


class ConversationState(BaseModel):
    """Short-lived context of an active conversation.

    Lives only in the session cache; every turn replaces the cached copy whole.
    """

    conversation_id: str
    user_id: str
    created_at: int = Field(default_factory=now_ms)
    turn_count: int = 0
    last_message: Optional[str] = None
    last_response: Optional[str] = None
    context: dict[str, Any] = Field(default_factory=dict)
    voice_settings: Optional[VoiceSettings] = None
    preferences: UserVoicePreferences = Field(default_factory=UserVoicePreferences)

    def advanced(
        self,
        user_text: str,
        response_text: str,
        context: dict[str, Any],
        preferences: Optional[UserVoicePreferences] = None,
    ) -> "ConversationState":
        """Return a copy of this state moved forward by one completed turn."""
        return self.model_copy(
            update={
                "turn_count": self.turn_count + 1,
                "last_message": user_text,
                "last_response": response_text,
                "context": {**self.context, **context},
                "preferences": preferences if preferences is not None else self.preferences,
            },
            deep=True,
        )


@dataclass
class TurnResult:
    """What a processed turn hands back to the caller."""

    text: str
    audio: Optional[bytes] = None
    intent: Optional[str] = None
    entities: dict[str, Any] = field(default_factory=dict)
    preferences_saved: bool = False
    transcript: Optional[str] = None
    audio_source: Optional[str] = None
    input_source: Optional[str] = None  # transcriber tag, or "text"

    def to_dict(self) -> dict:
        """JSON-safe form (audio base64-encoded) used for caching and the API."""
        return {
            "text": self.text,
            "audio": base64.b64encode(self.audio).decode("ascii") if self.audio else None,
            "intent": self.intent,
            "entities": self.entities,
            "preferences_saved": self.preferences_saved,
            "transcript": self.transcript,
            "audio_source": self.audio_source,
            "input_source": self.input_source,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TurnResult":
        audio = data.get("audio")
        return cls(
            text=data["text"],
            audio=base64.b64decode(audio) if audio else None,
            intent=data.get("intent"),
            entities=data.get("entities") or {},
            preferences_saved=bool(data.get("preferences_saved")),
            transcript=data.get("transcript"),
            audio_source=data.get("audio_source"),
            input_source=data.get("input_source"),
        )
