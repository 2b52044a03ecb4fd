"""Test doubles for the external providers."""
import asyncio
import io
import json
import wave
from typing import Callable, Optional, Union

from audio.stt import Transcriber, TranscriptionResult
from audio.tts import Synthesizer
from core.config import AppConfig
from core.errors import ProviderUnavailable
from core.main import ConversationEngine
from core.state import VoiceSettings
from llm.service import LanguageService
from storage.cache import InMemorySessionCache
from storage.profile_store import InMemoryProfileStore


def make_wav(seconds: float = 1.0, sample_rate: int = 16000, fill: int = 0) -> bytes:
    """A mono 16-bit WAV buffer; vary ``fill`` to get different content."""
    frames = int(seconds * sample_rate)
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav:
        wav.setnchannels(1)
        wav.setsampwidth(2)
        wav.setframerate(sample_rate)
        wav.writeframes(bytes([fill % 256, 0]) * frames)
    return buffer.getvalue()


class FakeTranscriber(Transcriber):
    def __init__(self, name: str, text: str = "", error: Optional[Exception] = None,
                 delay: float = 0.0):
        self.name = name
        self.text = text
        self.error = error
        self.delay = delay
        self.calls = 0
        self.prompts = []

    async def transcribe(self, audio, language=None, prompt=None):
        self.calls += 1
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return TranscriptionResult(text=self.text, source=self.name, confidence=0.9)


class FakeSynthesizer(Synthesizer):
    def __init__(self, name: str, audio: bytes = b"ID3-fake-audio", error: Optional[Exception] = None,
                 available: bool = True, delay: float = 0.0):
        self.name = name
        self.audio = audio
        self.error = error
        self.delay = delay
        self._available = available
        self.calls = 0
        self.settings: list[VoiceSettings] = []

    @property
    def available(self) -> bool:
        return self._available

    async def synthesize(self, text, settings):
        self.calls += 1
        self.settings.append(settings)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.audio


Reply = Union[str, Callable[[list[dict], dict], str]]


class FakeRouter:
    """Stands in for LLMRouter. With no replies configured every call fails."""

    def __init__(self, intent: Optional[dict] = None, reply: Optional[str] = None,
                 summary: Optional[str] = None):
        self.intent = intent
        self.reply = reply
        self.summary = summary
        self.calls: list[list[dict]] = []

    async def complete(self, messages, **kwargs):
        self.calls.append(messages)
        system = messages[0]["content"]
        if kwargs.get("json_mode"):
            answer = json.dumps(self.intent) if self.intent is not None else None
        elif system.startswith("Summarize"):
            answer = self.summary
        else:
            answer = self.reply
        if answer is None:
            raise ProviderUnavailable("llm", "not configured")
        return answer


def make_config(**sections) -> AppConfig:
    """Defaults tuned for tests: no backoff delay and short timeouts."""
    data = {
        "retry": {"base_delay_seconds": 0.0},
        "timeouts": {"default": 2.0, "transcription": 1.0, "llm": 1.0, "synthesis": 1.0, "voice_turn": 5.0},
    }
    for name, values in sections.items():
        data.setdefault(name, {}).update(values)
    return AppConfig(**data)


def make_engine(transcribers=None, synthesizers=None, router=None, config=None) -> ConversationEngine:
    return ConversationEngine(
        config or make_config(),
        InMemorySessionCache(),
        InMemoryProfileStore(),
        transcribers if transcribers is not None else [FakeTranscriber("openai", text="show me red dresses")],
        synthesizers if synthesizers is not None else [FakeSynthesizer("elevenlabs")],
        LanguageService(router or FakeRouter()),
    )
