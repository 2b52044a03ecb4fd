import hashlib
import io
import wave
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from loguru import logger

from core.config import AudioConfig, CacheConfig
from core.errors import InvalidInput, ProviderUnavailable, ValidationError
from core.models import Priority, ProviderCallEnvelope
from core.orchestrator import ProcessOptions, RequestOrchestrator

FALLBACK_SOURCE = "fallback"

# (magic bytes, offset, format)
_MAGIC = [
    (b"RIFF", 0, "wav"),
    (b"ID3", 0, "mp3"),
    (b"\xff\xfb", 0, "mp3"),
    (b"\xff\xf3", 0, "mp3"),
    (b"OggS", 0, "ogg"),
    (b"fLaC", 0, "flac"),
    (b"\x1a\x45\xdf\xa3", 0, "webm"),
    (b"ftyp", 4, "m4a"),
]

MIME_TYPES = {
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "ogg": "audio/ogg",
    "flac": "audio/flac",
    "webm": "audio/webm",
    "m4a": "audio/mp4",
}


def detect_audio_format(audio: bytes) -> str:
    """Guess the container from magic bytes. Defaults to mp3."""
    for magic, offset, fmt in _MAGIC:
        if audio[offset:offset + len(magic)] == magic:
            return fmt
    return "mp3"


def audio_fingerprint(audio: bytes) -> str:
    """Deterministic content key: byte-identical audio gives the same key."""
    return hashlib.sha256(audio).hexdigest()[:32]


def wav_duration(audio: bytes) -> Optional[float]:
    """Duration in seconds of a WAV buffer, or None if it can't be parsed."""
    try:
        with wave.open(io.BytesIO(audio), "rb") as wf:
            rate = wf.getframerate()
            return wf.getnframes() / rate if rate else None
    except (wave.Error, EOFError):
        return None


@dataclass
class TranscriptionResult:
    text: str
    source: str
    confidence: Optional[float] = None
    language: Optional[str] = None

    @property
    def is_fallback(self) -> bool:
        """True for the 'transcription unavailable' sentinel."""
        return self.source == FALLBACK_SOURCE or not self.text.strip()

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "source": self.source,
            "confidence": self.confidence,
            "language": self.language,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TranscriptionResult":
        return cls(
            text=data.get("text", ""),
            source=data.get("source", FALLBACK_SOURCE),
            confidence=data.get("confidence"),
            language=data.get("language"),
        )

    @classmethod
    def unavailable(cls) -> "TranscriptionResult":
        return cls(text="", source=FALLBACK_SOURCE, confidence=0.0)


class Transcriber(ABC):
    """A speech-to-text capability provider."""

    name: str = "stt"

    @property
    def available(self) -> bool:
        return True

    @abstractmethod
    async def transcribe(self, audio: bytes, language: Optional[str] = None,
                         prompt: Optional[str] = None) -> TranscriptionResult:
        """Transcribe an encoded audio buffer.

        Raises:
            ProviderUnavailable: on any provider/network failure.
            InvalidInput: when the provider rejects the audio itself.
        """
        ...


class WhisperTranscriber(Transcriber):
    """OpenAI Whisper API. Highest accuracy, accepts a biasing context prompt."""

    name = "openai"

    def __init__(self, api_key: str, model: str = "whisper-1"):
        self.api_key = api_key
        self.model = model
        self._client = None

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    def _ensure_client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self.api_key)

    async def transcribe(self, audio: bytes, language: Optional[str] = None,
                         prompt: Optional[str] = None) -> TranscriptionResult:
        if not self.api_key:
            raise ProviderUnavailable(self.name, "no API key configured")

        self._ensure_client()
        import openai

        fmt = detect_audio_format(audio)
        api_kwargs = {
            "model": self.model,
            "file": (f"audio.{fmt}", audio, MIME_TYPES[fmt]),
            "response_format": "verbose_json",
        }
        if language:
            api_kwargs["language"] = language
        if prompt:
            api_kwargs["prompt"] = prompt

        try:
            response = await self._client.audio.transcriptions.create(**api_kwargs)
        except openai.BadRequestError as e:
            raise InvalidInput(self.name, str(e))
        except openai.OpenAIError as e:
            raise ProviderUnavailable(self.name, str(e))

        text = (response.text or "").strip()
        logger.debug("Whisper STT result: '{}'", text)
        # Whisper reports no confidence; 0.9 is the conventional estimate
        return TranscriptionResult(
            text=text,
            source=self.name,
            confidence=0.9,
            language=getattr(response, "language", None) or language,
        )


class ElevenLabsTranscriber(Transcriber):
    """ElevenLabs speech-to-text via the official SDK. Secondary provider."""

    name = "elevenlabs"

    def __init__(self, api_key: str, model: str = "scribe_v1"):
        self.api_key = api_key
        self.model = model
        self._client = None

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    def _ensure_client(self):
        if self._client is None:
            from elevenlabs.client import AsyncElevenLabs
            self._client = AsyncElevenLabs(api_key=self.api_key)

    async def transcribe(self, audio: bytes, language: Optional[str] = None,
                         prompt: Optional[str] = None) -> TranscriptionResult:
        if not self.api_key:
            raise ProviderUnavailable(self.name, "no API key configured")

        self._ensure_client()
        fmt = detect_audio_format(audio)
        upload = io.BytesIO(audio)
        upload.name = f"audio.{fmt}"

        kwargs = {"file": upload, "model_id": self.model}
        if language:
            kwargs["language_code"] = language
        try:
            response = await self._client.speech_to_text.convert(**kwargs)
        except Exception as e:
            raise ProviderUnavailable(self.name, str(e))

        text = (getattr(response, "text", "") or "").strip()
        if not text:
            raise ProviderUnavailable(self.name, "empty transcription")
        logger.debug("ElevenLabs STT result: '{}'", text)
        return TranscriptionResult(
            text=text,
            source=self.name,
            confidence=getattr(response, "language_probability", None) or 0.8,
            language=getattr(response, "language_code", None) or language,
        )


class TranscriptionResolver:
    """Turns audio into text by trying transcribers in priority order.

    Every provider call goes through the request orchestrator, keyed by a
    hash of the audio so identical concurrent requests share one upstream
    call. When every provider fails the 'unavailable' sentinel is returned
    instead of raising.
    """

    def __init__(
        self,
        transcribers: list[Transcriber],
        orchestrator: RequestOrchestrator,
        audio_config: AudioConfig,
        cache_config: CacheConfig,
        timeout: float = 30.0,
    ):
        self.transcribers = transcribers
        self.orchestrator = orchestrator
        self.audio_config = audio_config
        self.cache_config = cache_config
        self.timeout = timeout

    def validate(self, audio: bytes) -> None:
        """Reject empty, too-short or oversized audio before any provider call."""
        if not audio:
            raise ValidationError("Audio is empty.")
        size = len(audio)
        if size > self.audio_config.max_bytes:
            raise ValidationError(
                f"Audio too large: {size} bytes (max: {self.audio_config.max_bytes})"
            )
        if size < self.audio_config.min_bytes:
            raise ValidationError(
                f"Audio too short: {size} bytes (min: {self.audio_config.min_bytes})"
            )
        if detect_audio_format(audio) == "wav":
            duration = wav_duration(audio)
            if duration is not None and duration < self.audio_config.min_duration_seconds:
                raise ValidationError(
                    f"Audio too short: {duration:.2f}s (min: {self.audio_config.min_duration_seconds}s)"
                )

    async def transcribe(
        self,
        audio: bytes,
        language: Optional[str] = None,
        context_prompt: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> TranscriptionResult:
        self.validate(audio)
        fingerprint = audio_fingerprint(audio)

        for transcriber in self.transcribers:
            if not transcriber.available:
                continue
            key = f"stt:{transcriber.name}:{fingerprint}:{language or 'auto'}"
            envelope = ProviderCallEnvelope(
                type="transcription",
                payload=audio,
                user_id=user_id,
                dedupe_key=key,
                priority=Priority.HIGH,
            )

            async def work(env: ProviderCallEnvelope, t: Transcriber = transcriber) -> dict:
                result = await t.transcribe(env.payload, language=language, prompt=context_prompt)
                if not result.text.strip():
                    # Never cache silence as an answer
                    raise ProviderUnavailable(t.name, "empty transcription")
                return result.to_dict()

            try:
                data = await self.orchestrator.process(
                    envelope,
                    work,
                    ProcessOptions(
                        cache_key=key,
                        cache_ttl=self.cache_config.transcription_ttl,
                        service_name=f"stt:{transcriber.name}",
                        timeout=self.timeout,
                    ),
                )
            except ProviderUnavailable as e:
                logger.warning("Transcriber '{}' failed: {}. Trying next.", transcriber.name, e)
                continue

            result = TranscriptionResult.from_dict(data)
            logger.info("Transcribed via {}: '{}'", result.source, result.text[:80])
            return result

        logger.error("All transcribers failed; returning unavailable sentinel.")
        return TranscriptionResult.unavailable()
