import asyncio
import base64
import hashlib
import io
import json
import wave
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx
import numpy as np
from loguru import logger

from core.errors import InvalidInput, InvalidVoice, ProviderUnavailable, SynthesisFailed, ValidationError
from core.models import Priority, ProviderCallEnvelope
from core.orchestrator import ProcessOptions, RequestOrchestrator
from core.state import VoiceSettings

CACHE_SOURCE = "cache"


@dataclass
class SynthesisResult:
    audio: bytes
    source: str
    content_type: str = "audio/mpeg"

    @property
    def cached(self) -> bool:
        return self.source == CACHE_SOURCE


def speech_cache_key(text: str, settings: VoiceSettings) -> str:
    """Content key over the text and every parameter that changes the audio."""
    params = json.dumps(settings.model_dump(), sort_keys=True)
    digest = hashlib.sha256(f"{text}|{params}".encode()).hexdigest()
    return f"tts:{digest}"


class Synthesizer(ABC):
    """A text-to-speech capability provider."""

    name: str = "tts"
    content_type: str = "audio/mpeg"

    @property
    def available(self) -> bool:
        return True

    @abstractmethod
    async def synthesize(self, text: str, settings: VoiceSettings) -> bytes:
        """Render text to encoded audio.

        Raises:
            InvalidVoice: the voice id is unknown to the provider.
            InvalidInput: the provider rejected the text.
            ProviderUnavailable: any other failure.
        """
        ...


class PiperSynthesizer(Synthesizer):
    """Local text-to-speech using Piper TTS.

    Used first when a voice model is installed. Ignores the remote voice id and
    always speaks with the configured local voice.
    """

    name = "local"
    content_type = "audio/wav"

    def __init__(
        self,
        model_dir: Path,
        voice: str = "en_US-lessac-medium",
        sample_rate: int = 22050,
    ):
        self.model_dir = model_dir
        self.voice = voice
        self.sample_rate = sample_rate
        self._piper = None

    @property
    def available(self) -> bool:
        return self._piper is not None

    async def load(self):
        """Load the Piper TTS voice model."""
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, self._load_sync)

    def _load_sync(self):
        try:
            from piper import PiperVoice

            model_path = self.model_dir / f"{self.voice}.onnx"
            config_path = self.model_dir / f"{self.voice}.onnx.json"

            if model_path.exists():
                self._piper = PiperVoice.load(str(model_path), config_path=str(config_path))
                logger.info("Piper TTS loaded: {}", self.voice)
            else:
                logger.info("No local voice model at {}. Local synthesis disabled.", model_path)
        except ImportError:
            logger.warning("piper-tts not installed. Local synthesis will be unavailable.")

    async def synthesize(self, text: str, settings: VoiceSettings) -> bytes:
        if self._piper is None:
            raise ProviderUnavailable(self.name, "voice model not loaded")

        loop = asyncio.get_event_loop()
        audio = await loop.run_in_executor(None, self._synthesize_sync, text)
        if not audio:
            raise ProviderUnavailable(self.name, "no audio produced")
        return audio

    def _synthesize_sync(self, text: str) -> bytes:
        # Each chunk carries float32 samples normalized to [-1, 1]
        all_audio = []
        for chunk in self._piper.synthesize(text):
            all_audio.append((chunk.audio_float_array * 32767).astype(np.int16))

        if not all_audio:
            logger.warning("Local TTS produced no audio for: '{}'", text[:50])
            return b""

        audio_data = np.concatenate(all_audio)

        wav_buffer = io.BytesIO()
        with wave.open(wav_buffer, "wb") as wav:
            wav.setnchannels(1)
            wav.setsampwidth(2)  # 16-bit
            wav.setframerate(self.sample_rate)
            wav.writeframes(audio_data.tobytes())

        audio_bytes = wav_buffer.getvalue()
        logger.debug("Local TTS: synthesized {} bytes for '{}'", len(audio_bytes), text[:50])
        return audio_bytes


class ElevenLabsSynthesizer(Synthesizer):
    """ElevenLabs text-to-speech over the REST API."""

    name = "elevenlabs"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.elevenlabs.io/v1",
        timeout: float = 30.0,
        output_format: str = "mp3_44100_128",
    ):
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self.output_format = output_format
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={
                    "xi-api-key": self.api_key,
                    "Content-Type": "application/json",
                    "Accept": "audio/mpeg",
                },
                timeout=httpx.Timeout(self.timeout),
            )
        return self._client

    async def synthesize(self, text: str, settings: VoiceSettings) -> bytes:
        if not self.api_key:
            raise ProviderUnavailable(self.name, "no API key configured")

        voice_settings = {
            "stability": settings.stability,
            "similarity_boost": settings.similarity_boost,
        }
        if settings.style is not None:
            voice_settings["style"] = settings.style
        if settings.use_speaker_boost is not None:
            voice_settings["use_speaker_boost"] = settings.use_speaker_boost

        try:
            response = await self._get_client().post(
                f"/text-to-speech/{settings.voice_id}",
                json={
                    "text": text,
                    "model_id": settings.model_id,
                    "voice_settings": voice_settings,
                },
                params={"output_format": self.output_format},
            )
        except httpx.HTTPError as e:
            raise ProviderUnavailable(self.name, str(e))

        if response.status_code == 404:
            raise InvalidVoice(self.name, f"voice '{settings.voice_id}' not found")
        if response.status_code in (400, 422):
            raise InvalidInput(self.name, response.text[:200])
        if response.status_code == 401:
            raise ProviderUnavailable(self.name, "invalid API key")
        if response.status_code == 429:
            raise ProviderUnavailable(self.name, "rate limit exceeded")
        if response.status_code != 200:
            raise ProviderUnavailable(
                self.name, f"API error {response.status_code}: {response.text[:200]}"
            )

        if not response.content:
            raise ProviderUnavailable(self.name, "empty audio response")
        return response.content

    async def close(self):
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()


class ElevenLabsSDKSynthesizer(Synthesizer):
    """ElevenLabs text-to-speech through the official SDK. Last resort."""

    name = "elevenlabs-sdk"

    def __init__(self, api_key: str):
        self.api_key = api_key
        self._client = None

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    def _ensure_client(self):
        if self._client is None:
            from elevenlabs.client import AsyncElevenLabs
            self._client = AsyncElevenLabs(api_key=self.api_key)

    async def synthesize(self, text: str, settings: VoiceSettings) -> bytes:
        if not self.api_key:
            raise ProviderUnavailable(self.name, "no API key configured")

        self._ensure_client()
        from elevenlabs import VoiceSettings as SDKVoiceSettings
        from elevenlabs.core.api_error import ApiError

        sdk_settings = SDKVoiceSettings(
            stability=settings.stability,
            similarity_boost=settings.similarity_boost,
            style=settings.style,
            use_speaker_boost=settings.use_speaker_boost,
        )
        chunks = []
        try:
            async for chunk in self._client.text_to_speech.convert(
                voice_id=settings.voice_id,
                text=text,
                model_id=settings.model_id,
                voice_settings=sdk_settings,
            ):
                chunks.append(chunk)
        except ApiError as e:
            if e.status_code == 404:
                raise InvalidVoice(self.name, f"voice '{settings.voice_id}' not found")
            if e.status_code in (400, 422):
                raise InvalidInput(self.name, str(e.body)[:200])
            raise ProviderUnavailable(self.name, f"API error {e.status_code}")
        except Exception as e:
            raise ProviderUnavailable(self.name, str(e))

        audio = b"".join(chunks)
        if not audio:
            raise ProviderUnavailable(self.name, "empty audio response")
        return audio


class SpeechSynthesisResolver:
    """Turns text into audio: cache first, then each synthesizer in order.

    Successful audio from any stage is cached under a key derived from the
    text and voice parameters; the lookup goes through the orchestrator so
    hits show up in its stats. Unconfigured stages are skipped. If every stage
    fails, ``SynthesisFailed`` is raised; it is transient unless every failure
    was caused by the request itself (unknown voice, rejected text) or no
    stage is configured at all.
    """

    def __init__(
        self,
        synthesizers: list[Synthesizer],
        orchestrator: RequestOrchestrator,
        cache_ttl: int = 86400,
        timeout: float = 30.0,
        max_text_chars: int = 2500,
    ):
        self.synthesizers = synthesizers
        self.orchestrator = orchestrator
        self.cache_ttl = cache_ttl
        self.timeout = timeout
        self.max_text_chars = max_text_chars

    async def synthesize(self, text: str, settings: VoiceSettings,
                         user_id: Optional[str] = None) -> SynthesisResult:
        if not text or not text.strip():
            raise ValidationError("Nothing to synthesize.")
        if len(text) > self.max_text_chars:
            raise SynthesisFailed(
                f"text too long ({len(text)} > {self.max_text_chars} chars)", transient=False
            )

        stages = [s for s in self.synthesizers if s.available]
        if not stages:
            # A configuration gap: retrying cannot help until keys or models appear
            raise SynthesisFailed("no synthesizer available", transient=False)

        key = speech_cache_key(text, settings)
        transient = False
        errors = []
        for synthesizer in stages:
            envelope = ProviderCallEnvelope(
                type="synthesis",
                payload=text,
                user_id=user_id,
                dedupe_key=f"{key}:{synthesizer.name}",
                priority=Priority.HIGH,
            )
            produced = []

            async def work(env: ProviderCallEnvelope, s: Synthesizer = synthesizer) -> dict:
                audio = await s.synthesize(env.payload, settings)
                produced.append(s.name)
                return {
                    "audio": base64.b64encode(audio).decode("ascii"),
                    "content_type": s.content_type,
                    "source": s.name,
                }

            try:
                data = await self.orchestrator.process(
                    envelope,
                    work,
                    ProcessOptions(
                        cache_key=key,
                        cache_ttl=self.cache_ttl,
                        service_name=f"tts:{synthesizer.name}",
                        timeout=self.timeout,
                    ),
                )
            except (InvalidVoice, InvalidInput) as e:
                logger.warning("Synthesizer '{}' rejected request: {}", synthesizer.name, e)
                errors.append(str(e))
                continue
            except ProviderUnavailable as e:
                logger.warning("Synthesizer '{}' failed: {}. Trying next.", synthesizer.name, e)
                errors.append(str(e))
                transient = True
                continue

            audio = base64.b64decode(data["audio"])
            if not produced:
                # Served from cache (or shared with an identical in-flight request)
                logger.debug("TTS cache hit for '{}'", text[:50])
                return SynthesisResult(audio=audio, source=CACHE_SOURCE,
                                       content_type=data.get("content_type", "audio/mpeg"))
            logger.info("Synthesized {} bytes via {}", len(audio), synthesizer.name)
            return SynthesisResult(audio=audio, source=synthesizer.name,
                                   content_type=synthesizer.content_type)

        raise SynthesisFailed("; ".join(errors), transient=transient)
