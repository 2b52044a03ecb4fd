import asyncio
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from audio.stt import FALLBACK_SOURCE, TranscriptionResolver, Transcriber, audio_fingerprint
from audio.tts import SpeechSynthesisResolver, SynthesisResult, Synthesizer
from core.config import AppConfig, ConfigManager
from core.errors import ProviderUnavailable, SynthesisFailed, TurnFailed, ValidationError
from core.models import (
    DEFAULT_INTENT,
    Priority,
    ProviderCallEnvelope,
    Speaker,
    TranscriptEntry,
    UserVoicePreferences,
    now_ms,
)
from core.orchestrator import ProcessOptions, RequestOrchestrator
from core.state import ConversationState, TurnResult, VoiceSettings, new_conversation_id
from llm.intent import IntentExtractor, IntentResult
from llm.responder import ResponseGenerator
from llm.service import LanguageService
from memory.history import HistoryOptimizer
from memory.preferences import (
    PreferenceManager,
    detect_explicit_preferences,
    merge_preferences,
    preferences_from_entities,
    profile_key,
)
from storage.cache import SessionCache
from storage.profile_store import ProfileStore

# Base directory for the concierge package
BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = BASE_DIR / "data"
MODELS_DIR = BASE_DIR / "models"

CLARIFICATION = "Sorry, I didn't quite catch that. Could you say it again?"


def state_key(user_id: str) -> str:
    return f"conversation:{user_id}"


def settings_key(conversation_id: str) -> str:
    return f"conversation:{conversation_id}:settings"


def transcript_key(user_id: str) -> str:
    return f"{user_id}-conversation"


class ConversationEngine:
    """Runs conversational turns: audio or text in, reply text and audio out.

    Every external call goes through one RequestOrchestrator, so identical
    concurrent requests collapse, repeated requests hit the cache and a
    failing provider trips only its own circuit.
    """

    def __init__(
        self,
        config: AppConfig,
        cache: SessionCache,
        store: ProfileStore,
        transcribers: list[Transcriber],
        synthesizers: list[Synthesizer],
        language: LanguageService,
    ):
        self.config = config
        self.cache = cache
        self.store = store
        self.synthesizers = synthesizers
        timeouts = config.timeouts

        self.orchestrator = RequestOrchestrator(
            cache,
            config.circuit,
            default_timeout=timeouts.default,
            low_priority_concurrency=config.conversation.low_priority_concurrency,
        )
        self.transcription = TranscriptionResolver(
            transcribers, self.orchestrator, config.audio, config.cache, timeout=timeouts.transcription,
        )
        self.synthesis = SpeechSynthesisResolver(
            synthesizers,
            self.orchestrator,
            cache_ttl=config.cache.speech_ttl,
            timeout=timeouts.synthesis,
            max_text_chars=config.voice.max_text_chars,
        )
        self.intents = IntentExtractor(language, self.orchestrator, timeout=timeouts.llm)
        self.responder = ResponseGenerator(language, self.orchestrator, timeout=timeouts.llm)
        self.history = HistoryOptimizer(language, self.orchestrator, timeout=timeouts.llm,
                                        cache_ttl=config.cache.conversation_ttl)
        self.preferences = PreferenceManager(cache, store, cache_ttl=config.cache.preferences_ttl)

        self.voice_turn_timeout = self._voice_turn_budget(len(transcribers), len(synthesizers))
        if self.voice_turn_timeout > timeouts.voice_turn:
            logger.warning("Voice turn timeout {:.1f}s is below its stages' worst case; using {:.1f}s.",
                           timeouts.voice_turn, self.voice_turn_timeout)

    def _voice_turn_budget(self, n_transcribers: int, n_synthesizers: int) -> float:
        """Whole-turn bound, never shorter than every stage timing out in sequence."""
        timeouts, retry = self.config.timeouts, self.config.retry
        backoff = sum(retry.delay_for(i) for i in range(retry.turn_attempts - 1))
        backoff += sum(retry.delay_for(i) for i in range(retry.synthesis_attempts - 1))
        worst_case = (
            retry.turn_attempts * max(1, n_transcribers) * timeouts.transcription
            + 3 * timeouts.llm  # intent, reply, history summary
            + retry.synthesis_attempts * max(1, n_synthesizers) * timeouts.synthesis
            + backoff
        )
        return max(timeouts.voice_turn, worst_case)

    async def start(self):
        """Load local models (if any) before serving turns."""
        for synthesizer in self.synthesizers:
            load = getattr(synthesizer, "load", None)
            if load is not None:
                await load()
        logger.info("Conversation engine ready.")

    async def shutdown(self):
        for synthesizer in self.synthesizers:
            close = getattr(synthesizer, "close", None)
            if close is not None:
                await close()
        await self.cache.close()

    # -- Conversations ---------------------------------------------------

    async def start_conversation(self, user_id: str) -> ConversationState:
        if not user_id:
            raise ValidationError("user_id is required.")

        await self._get_or_create_profile(user_id)
        prefs = await self.preferences.get(user_id)
        voice_settings = VoiceSettings.from_config(self.config.voice, prefs.voice_preference)

        state = ConversationState(
            conversation_id=new_conversation_id(user_id),
            user_id=user_id,
            context={"session_start": now_ms(), "message_count": 0},
            voice_settings=voice_settings,
            preferences=prefs,
        )
        await self._cache_set(settings_key(state.conversation_id), voice_settings.model_dump(),
                              self.config.cache.voice_settings_ttl)
        await self._save_state(state)
        logger.info("Conversation {} started for user {}", state.conversation_id, user_id)
        return state

    async def end_conversation(self, conversation_id: str, user_id: Optional[str] = None) -> None:
        keys = [settings_key(conversation_id)]
        if user_id:
            keys.append(state_key(user_id))
        for key in keys:
            try:
                await self.cache.delete(key)
            except Exception as e:
                logger.error("Failed to clear {}: {}", key, e)
        logger.info("Conversation {} ended.", conversation_id)

    async def get_conversation_history(self, user_id: str, limit: Optional[int] = None) -> list[TranscriptEntry]:
        """The user's transcript, bounded to ``limit`` recent entries plus one summary."""
        limit = self.config.conversation.history_window if limit is None else limit
        entries = await self._load_transcript(user_id)
        return await self.history.optimize(entries, limit, user_id=user_id)

    # -- Turns -----------------------------------------------------------

    async def process_voice_turn(self, conversation_id: str, audio: bytes,
                                 user_id: Optional[str] = None) -> TurnResult:
        self.transcription.validate(audio)

        fingerprint = audio_fingerprint(audio)
        key = f"voice:{user_id or 'anon'}:{fingerprint}"
        envelope = ProviderCallEnvelope(
            type="voice",
            payload=audio,
            user_id=user_id,
            dedupe_key=key,
            priority=Priority.HIGH,
        )

        async def work(env: ProviderCallEnvelope) -> dict:
            result = await self._process_voice(conversation_id, env.payload, user_id)
            return result.to_dict()

        try:
            data = await self.orchestrator.process(
                envelope,
                work,
                ProcessOptions(
                    cache_key=key if user_id else None,
                    cache_ttl=self.config.cache.voice_turn_ttl,
                    service_name="voice-turn",
                    timeout=self.voice_turn_timeout,
                ),
            )
        except ProviderUnavailable as e:
            # Open circuit, outer timeout or a cancelled shared turn: every stage has its own fallback
            logger.warning("{}. Processing voice turn directly.", e)
            return await self._process_voice(conversation_id, audio, user_id)
        return TurnResult.from_dict(data)

    async def process_text_turn(self, query: str, user_id: Optional[str] = None,
                                audio_preferred: bool = False) -> TurnResult:
        query = (query or "").strip()
        if not query:
            raise ValidationError("Query is empty.")
        max_chars = self.config.conversation.max_query_chars
        if len(query) > max_chars:
            raise ValidationError(f"Query too long: {len(query)} chars (max: {max_chars})")

        return await self._complete_turn(
            query, user_id, conversation_id=None, input_source="text", speak=audio_preferred,
        )

    async def _process_voice(self, conversation_id: str, audio: bytes,
                             user_id: Optional[str]) -> TurnResult:
        retry = self.config.retry
        for attempt in range(retry.turn_attempts):
            prompt = await self._context_prompt(user_id) if user_id else None
            transcription = await self.transcription.transcribe(audio, context_prompt=prompt, user_id=user_id)

            if not transcription.is_fallback:
                return await self._complete_turn(
                    transcription.text, user_id, conversation_id,
                    input_source=transcription.source, speak=True,
                )

            if user_id and await self._has_context(user_id):
                logger.info("No transcription for user {}; asking to repeat.", user_id)
                return await self._clarify(user_id)

            logger.warning("Voice turn attempt {}/{} produced no transcription.",
                           attempt + 1, retry.turn_attempts)
            if attempt < retry.turn_attempts - 1:
                await asyncio.sleep(retry.delay_for(attempt))

        raise TurnFailed(f"Could not transcribe audio after {retry.turn_attempts} attempts.")

    async def _complete_turn(
        self,
        text: str,
        user_id: Optional[str],
        conversation_id: Optional[str],
        input_source: str,
        speak: bool,
    ) -> TurnResult:
        state: Optional[ConversationState] = None
        profile: Optional[dict] = None
        history: list[TranscriptEntry] = []
        stored_prefs = UserVoicePreferences()
        if user_id:
            state, profile, history, stored_prefs = await asyncio.gather(
                self._load_state(user_id),
                self._load_profile(user_id),
                self.get_conversation_history(user_id),
                self.preferences.get(user_id),
            )

        # Explicit statements are pattern-matched locally while the model classifies
        explicit = detect_explicit_preferences(text, self.config.voice.catalog)
        intent = await self.intents.extract(text, history, profile, user_id=user_id)

        prefs, changed, acknowledge = stored_prefs, False, False
        if user_id:
            delta = merge_preferences(explicit, preferences_from_entities(intent.entities))
            if not delta.is_empty:
                try:
                    prefs, changed = await self.preferences.save(user_id, delta)
                    acknowledge = changed and bool(delta.size_preferences or delta.voice_preference)
                except Exception as e:
                    # Preferences are advisory; the reply still goes out
                    logger.warning("Could not save preferences for {}: {}", user_id, e)

        response = await self.responder.generate(
            text, intent, history, profile, prefs, preferences_saved=acknowledge, user_id=user_id,
        )

        audio, audio_source = None, None
        voice_settings = self._voice_settings(state, prefs, profile, intent, text_mode=input_source == "text")
        if speak:
            audio, audio_source = await self._synthesize_with_retry(response.text, voice_settings, user_id)

        if user_id:
            await self._record_turn(user_id, conversation_id, state, text, response.text,
                                    intent, input_source, prefs, voice_settings, changed)

        return TurnResult(
            text=response.text,
            audio=audio,
            intent=intent.intent,
            entities=intent.entities,
            preferences_saved=changed,
            transcript=text,
            audio_source=audio_source,
            input_source=input_source,
        )

    async def _clarify(self, user_id: str) -> TurnResult:
        state = await self._load_state(user_id)
        prefs = state.preferences if state else UserVoicePreferences()
        settings = self._voice_settings(state, prefs, None, None, text_mode=False)
        audio, audio_source = await self._synthesize_with_retry(CLARIFICATION, settings, user_id)
        return TurnResult(
            text=CLARIFICATION,
            audio=audio,
            intent=DEFAULT_INTENT,
            transcript="",
            audio_source=audio_source,
            input_source=FALLBACK_SOURCE,
        )

    def _voice_settings(
        self,
        state: Optional[ConversationState],
        prefs: UserVoicePreferences,
        profile: Optional[dict],
        intent: Optional[IntentResult],
        text_mode: bool,
    ) -> VoiceSettings:
        voice_id = prefs.voice_preference or (profile or {}).get("voice_preference")
        if text_mode:
            # Text replies lean steadier when the request was understood confidently
            settings = VoiceSettings.from_config(self.config.voice, voice_id)
            confident = intent is not None and intent.confidence > 0.85
            return settings.model_copy(update={
                "stability": 0.7 if confident else 0.5,
                "similarity_boost": 0.85 if confident else 0.75,
            })

        if state is not None and state.voice_settings is not None:
            settings = state.voice_settings
            if voice_id and settings.voice_id != voice_id:
                settings = settings.model_copy(update={"voice_id": voice_id})
            return settings
        return VoiceSettings.from_config(self.config.voice, voice_id)

    async def _synthesize_with_retry(self, text: str, settings: VoiceSettings,
                                     user_id: Optional[str]) -> tuple[Optional[bytes], Optional[str]]:
        retry = self.config.retry
        for attempt in range(retry.synthesis_attempts):
            try:
                result = await self.synthesis.synthesize(text, settings, user_id=user_id)
                return result.audio, result.source
            except SynthesisFailed as e:
                if not e.transient:
                    logger.warning("Speech synthesis failed permanently: {}", e)
                    break
                logger.warning("Speech synthesis attempt {}/{} failed: {}",
                               attempt + 1, retry.synthesis_attempts, e)
                if attempt < retry.synthesis_attempts - 1:
                    await asyncio.sleep(retry.delay_for(attempt))
        logger.warning("Continuing with a text-only response.")
        return None, None

    async def _record_turn(
        self,
        user_id: str,
        conversation_id: Optional[str],
        state: Optional[ConversationState],
        user_text: str,
        response_text: str,
        intent: IntentResult,
        input_source: str,
        prefs: UserVoicePreferences,
        voice_settings: VoiceSettings,
        preferences_saved: bool,
    ) -> None:
        message_count = (state.context.get("message_count", 0) if state else 0) + 1
        context = {
            "last_query": user_text,
            "last_intent": intent.intent,
            "last_entities": intent.entities,
            "confidence": intent.confidence,
            "timestamp": now_ms(),
            "message_count": message_count,
            "input_source": input_source,
        }
        if state is None:
            state = ConversationState(
                conversation_id=conversation_id or new_conversation_id(user_id),
                user_id=user_id,
                voice_settings=voice_settings if input_source != "text" else None,
            )
        await self._save_state(state.advanced(user_text, response_text, context, prefs))

        try:
            await self.store.append(transcript_key(user_id), TranscriptEntry(
                role=Speaker.USER,
                message=user_text,
                intent=intent.intent,
                entities=intent.entities,
                source=input_source,
            ).model_dump(mode="json"))
            await self.store.append(transcript_key(user_id), TranscriptEntry(
                role=Speaker.ASSISTANT,
                message=response_text,
                metadata={"preferences_saved": preferences_saved},
            ).model_dump(mode="json"))
        except Exception as e:
            logger.error("Transcript write failed for {}: {}", user_id, e)

    # -- Preferences and speech -------------------------------------------

    async def get_user_preferences(self, user_id: str) -> UserVoicePreferences:
        return await self.preferences.get(user_id)

    async def update_user_preferences(self, user_id: str, delta: UserVoicePreferences) -> UserVoicePreferences:
        prefs, _ = await self.preferences.save(user_id, delta)
        return prefs

    async def synthesize_speech(self, text: str, voice_id: Optional[str] = None) -> SynthesisResult:
        """Standalone text-to-speech with the default voice parameters."""
        text = (text or "").strip()
        if not text:
            raise ValidationError("Text is empty.")
        if len(text) > self.config.voice.max_text_chars:
            raise ValidationError(
                f"Text too long: {len(text)} chars (max: {self.config.voice.max_text_chars})"
            )
        settings = VoiceSettings.from_config(self.config.voice, voice_id)
        return await self.synthesis.synthesize(text, settings)

    def stats(self) -> dict:
        return self.orchestrator.stats()

    # -- Storage helpers ---------------------------------------------------

    async def _load_state(self, user_id: str) -> Optional[ConversationState]:
        try:
            raw = await self.cache.get(state_key(user_id))
        except Exception as e:
            logger.warning("State read failed for {}: {}", user_id, e)
            return None
        return ConversationState.model_validate(raw) if raw else None

    async def _save_state(self, state: ConversationState) -> None:
        await self._cache_set(state_key(state.user_id), state.model_dump(mode="json"),
                              self.config.cache.conversation_ttl)

    async def _cache_set(self, key: str, value: Any, ttl: int) -> None:
        try:
            await self.cache.set(key, value, ttl)
        except Exception as e:
            logger.warning("Cache write failed for {}: {}", key, e)

    async def _load_profile(self, user_id: str) -> Optional[dict]:
        profile = await self.store.get(profile_key(user_id))
        return profile if isinstance(profile, dict) else None

    async def _get_or_create_profile(self, user_id: str) -> dict:
        profile = await self._load_profile(user_id)
        if profile is None:
            profile = {"user_id": user_id, "created_at": now_ms()}
            await self.store.set(profile_key(user_id), profile)
        return profile

    async def _load_transcript(self, user_id: str) -> list[TranscriptEntry]:
        raw = await self.store.get(transcript_key(user_id))
        if not isinstance(raw, list):
            return []
        entries = []
        for item in raw:
            try:
                entries.append(TranscriptEntry.model_validate(item))
            except ValueError as e:
                logger.warning("Skipping malformed transcript entry for {}: {}", user_id, e)
        return entries

    async def _has_context(self, user_id: str) -> bool:
        if await self._load_state(user_id) is not None:
            return True
        return bool(await self.store.get(transcript_key(user_id)))

    async def _context_prompt(self, user_id: str) -> Optional[str]:
        """Recent messages to bias the transcriber towards this conversation."""
        turns = self.config.conversation.context_prompt_turns
        state = await self._load_state(user_id)
        recent = [e.message for e in (await self._load_transcript(user_id))[-turns:] if e.is_dialogue]
        last_message = state.last_message if state else None
        if not recent and not last_message:
            return None
        prompt = f"Context: {'. '.join(recent)}."
        if last_message:
            prompt = f"{prompt} {last_message}"
        return prompt


def build_engine(config_manager: ConfigManager, data_dir: Path = DATA_DIR) -> ConversationEngine:
    """Wire the engine with real providers and storage from config."""
    from audio.stt import ElevenLabsTranscriber, WhisperTranscriber
    from audio.tts import ElevenLabsSDKSynthesizer, ElevenLabsSynthesizer, PiperSynthesizer
    from llm.base import LLMRouter
    from storage.cache import InMemorySessionCache, RedisSessionCache
    from storage.encryption import DataEncryption
    from storage.profile_store import InMemoryProfileStore, JsonFileProfileStore

    config = config_manager.config
    keys = config.api_keys
    storage = config.storage

    if storage.backend == "redis" and storage.redis_url:
        cache = RedisSessionCache(storage.redis_url)
    else:
        cache = InMemorySessionCache()

    if storage.backend == "memory":
        store = InMemoryProfileStore()
    else:
        encryption = None
        if storage.encryption_secret:
            encryption = DataEncryption(storage.encryption_secret, salt="concierge-profiles")
        store = JsonFileProfileStore(data_dir / "profiles", encryption=encryption)

    transcribers = [
        WhisperTranscriber(keys.openai, model=config.provider.whisper_model),
        ElevenLabsTranscriber(keys.elevenlabs, model=config.provider.elevenlabs_stt_model),
    ]
    synthesizers = [
        PiperSynthesizer(MODELS_DIR / "tts", voice=config.voice.local_voice,
                         sample_rate=config.voice.local_sample_rate),
        ElevenLabsSynthesizer(keys.elevenlabs, timeout=config.timeouts.synthesis),
        ElevenLabsSDKSynthesizer(keys.elevenlabs),
    ]
    language = LanguageService(LLMRouter(config_manager))

    if not config_manager.has_llm:
        logger.warning("No API key for LLM provider '{}'. Using rule-based fallbacks.", config.provider.llm)
    if not config_manager.has_elevenlabs:
        logger.warning("No ElevenLabs API key. Remote transcription fallback and speech are disabled.")

    return ConversationEngine(config, cache, store, transcribers, synthesizers, language)


async def serve(engine: ConversationEngine, config_manager: ConfigManager):
    """Start the engine and serve the HTTP API until stopped."""
    import uvicorn

    from api.server import create_app

    await engine.start()
    app = create_app(engine, config_manager)
    server_config = config_manager.config.server
    server = uvicorn.Server(uvicorn.Config(
        app, host=server_config.host, port=server_config.port, log_level="warning"
    ))
    logger.info("API server starting on port {}", server_config.port)
    try:
        await server.serve()
    finally:
        await engine.shutdown()


def main():
    """Entry point."""
    import sys
    from loguru import logger as log

    DATA_DIR.mkdir(parents=True, exist_ok=True)
    log.remove()
    log.add(sys.stderr, level="INFO", format="{time:HH:mm:ss} | {level:<7} | {message}")
    log.add(DATA_DIR / "concierge.log", rotation="10 MB", retention="7 days", level="DEBUG")

    config_manager = ConfigManager(DATA_DIR)
    engine = build_engine(config_manager)

    loop = asyncio.new_event_loop()
    try:
        loop.run_until_complete(serve(engine, config_manager))
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        loop.close()


if __name__ == "__main__":
    main()
