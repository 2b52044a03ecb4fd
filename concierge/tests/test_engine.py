"""End-to-end tests for ConversationEngine turns, with fake providers."""
import asyncio

import pytest

from core.errors import ProviderUnavailable, TurnFailed, ValidationError
from core.main import CLARIFICATION, state_key, transcript_key
from core.models import Speaker, TranscriptEntry
from llm.responder import ACKNOWLEDGEMENT

from fakes import FakeRouter, FakeSynthesizer, FakeTranscriber, make_config, make_engine, make_wav

GEORGE = "JBFqnCBsd6RMkjVDRZzb"


class TestVoiceTurns:
    @pytest.mark.asyncio
    async def test_turn_updates_state_and_transcript(self, audio):
        engine = make_engine()
        state = await engine.start_conversation("u1")

        result = await engine.process_voice_turn(state.conversation_id, audio, user_id="u1")

        assert result.transcript == "show me red dresses"
        assert result.intent == "search_product"
        assert result.audio == b"ID3-fake-audio"
        assert result.audio_source == "elevenlabs"
        assert result.input_source == "openai"

        saved = await engine.cache.get(state_key("u1"))
        assert saved["turn_count"] == 1
        assert saved["last_message"] == "show me red dresses"
        assert saved["last_response"] == result.text

        entries = await engine.store.get(transcript_key("u1"))
        assert [e["role"] for e in entries] == ["user", "assistant"]
        assert entries[0]["source"] == "openai"

    @pytest.mark.asyncio
    async def test_identical_concurrent_audio_is_transcribed_once(self, audio):
        transcriber = FakeTranscriber("openai", text="find blue dresses", delay=0.05)
        engine = make_engine(transcribers=[transcriber])

        first, second = await asyncio.gather(
            engine.process_voice_turn("c1", audio, user_id="u1"),
            engine.process_voice_turn("c1", audio, user_id="u1"),
        )

        assert transcriber.calls == 1
        assert first.text == second.text
        assert engine.orchestrator.dedup_joins >= 1

    @pytest.mark.asyncio
    async def test_slow_primary_falls_through_to_secondary(self, audio):
        slow = FakeTranscriber("openai", text="never mind", delay=0.5)
        backup = FakeTranscriber("elevenlabs", text="find blue dresses")
        engine = make_engine(
            transcribers=[slow, backup],
            config=make_config(timeouts={"transcription": 0.05}),
        )

        result = await engine.process_voice_turn("c1", audio, user_id="u1")

        assert result.input_source == "elevenlabs"
        assert result.intent == "search_product"
        assert result.entities["color"] == "blue"
        assert result.entities["category"] == "dress"

    @pytest.mark.asyncio
    async def test_synthesis_failure_still_returns_text(self, audio):
        broken = FakeSynthesizer("elevenlabs", error=ProviderUnavailable("elevenlabs", "503"))
        engine = make_engine(synthesizers=[broken])

        result = await engine.process_voice_turn("c1", audio, user_id="u1")

        assert result.text
        assert result.audio is None
        assert result.audio_source is None
        assert broken.calls == 3

    @pytest.mark.asyncio
    async def test_hanging_synthesis_still_returns_text(self, audio):
        stuck = FakeSynthesizer("elevenlabs", delay=30.0)
        engine = make_engine(
            synthesizers=[stuck],
            config=make_config(timeouts={"synthesis": 0.1, "voice_turn": 0.2}),
        )
        assert engine.voice_turn_timeout >= 0.3

        result = await asyncio.wait_for(engine.process_voice_turn("c1", audio, user_id="u1"), 5.0)

        assert result.text
        assert result.audio is None
        assert stuck.calls == 3

    @pytest.mark.asyncio
    async def test_outer_timeout_processes_turn_directly(self, audio):
        transcriber = FakeTranscriber("openai", text="find blue dresses", delay=0.1)
        engine = make_engine(transcribers=[transcriber])
        engine.voice_turn_timeout = 0.05

        result = await engine.process_voice_turn("c1", audio, user_id="u1")

        assert result.transcript == "find blue dresses"
        assert result.text
        assert engine.orchestrator.stats()["in_flight"] == 0

    @pytest.mark.asyncio
    async def test_no_transcription_without_context_fails(self, audio):
        transcriber = FakeTranscriber("openai", text="")
        engine = make_engine(transcribers=[transcriber])

        with pytest.raises(TurnFailed):
            await engine.process_voice_turn("c1", audio, user_id="stranger")
        assert transcriber.calls == 3

    @pytest.mark.asyncio
    async def test_no_transcription_with_context_asks_to_repeat(self, audio):
        engine = make_engine(transcribers=[FakeTranscriber("openai", text="")])
        state = await engine.start_conversation("u1")

        result = await engine.process_voice_turn(state.conversation_id, audio, user_id="u1")

        assert result.text == CLARIFICATION
        assert result.input_source == "fallback"
        assert result.audio is not None

    @pytest.mark.asyncio
    async def test_empty_audio_rejected(self):
        transcriber = FakeTranscriber("openai", text="hello")
        engine = make_engine(transcribers=[transcriber])

        with pytest.raises(ValidationError):
            await engine.process_voice_turn("c1", b"", user_id="u1")
        with pytest.raises(ValidationError):
            await engine.process_voice_turn("c1", make_wav(0.1), user_id="u1")
        assert transcriber.calls == 0

    @pytest.mark.asyncio
    async def test_repeat_turn_served_from_cache(self, audio):
        transcriber = FakeTranscriber("openai", text="show me red dresses")
        engine = make_engine(transcribers=[transcriber])

        first = await engine.process_voice_turn("c1", audio, user_id="u1")
        second = await engine.process_voice_turn("c1", audio, user_id="u1")

        assert second.text == first.text
        assert second.audio == first.audio
        assert transcriber.calls == 1
        assert len(await engine.store.get(transcript_key("u1"))) == 2

    @pytest.mark.asyncio
    async def test_context_prompt_reaches_transcriber(self, audio):
        transcriber = FakeTranscriber("openai", text="in blue please")
        engine = make_engine(transcribers=[transcriber])

        await engine.process_text_turn("show me red dresses", user_id="u1")
        await engine.process_voice_turn("c1", audio, user_id="u1")

        assert "show me red dresses" in transcriber.prompts[-1]

    @pytest.mark.asyncio
    async def test_anonymous_turn_keeps_no_state(self, audio):
        engine = make_engine()
        result = await engine.process_voice_turn("c1", audio)

        assert result.text
        assert await engine.cache.get(state_key("anon")) is None


class TestTextTurns:
    @pytest.mark.asyncio
    async def test_empty_query_rejected(self):
        engine = make_engine()
        with pytest.raises(ValidationError):
            await engine.process_text_turn("   ", user_id="u1")

    @pytest.mark.asyncio
    async def test_text_only_by_default(self):
        synth = FakeSynthesizer("elevenlabs")
        engine = make_engine(synthesizers=[synth])

        result = await engine.process_text_turn("where is my order", user_id="u1")

        assert result.intent == "track_order"
        assert result.audio is None
        assert result.input_source == "text"
        assert synth.calls == 0

    @pytest.mark.asyncio
    async def test_preference_store_failure_still_replies(self, monkeypatch):
        engine = make_engine()

        async def disk_full(key, value):
            raise OSError("disk full")

        monkeypatch.setattr(engine.store, "set", disk_full)
        result = await engine.process_text_turn("I'm a medium in Acme", user_id="u1")

        assert result.text
        assert not result.preferences_saved
        assert ACKNOWLEDGEMENT not in result.text

    @pytest.mark.asyncio
    async def test_unconfigured_voice_is_not_retried(self):
        silent = FakeSynthesizer("elevenlabs", available=False)
        engine = make_engine(
            synthesizers=[silent],
            config=make_config(retry={"base_delay_seconds": 5.0}),
        )

        result = await asyncio.wait_for(
            engine.process_text_turn("where is my order", user_id="u1", audio_preferred=True), 1.0
        )

        assert result.text
        assert result.audio is None
        assert silent.calls == 0

    @pytest.mark.asyncio
    async def test_size_preferences_accumulate(self):
        engine = make_engine()

        first = await engine.process_text_turn("I'm a medium in Acme", user_id="u1")
        assert first.preferences_saved
        assert first.text.endswith(ACKNOWLEDGEMENT)

        await engine.process_text_turn("I'm a large in Zara", user_id="u1")
        prefs = await engine.get_user_preferences("u1")
        assert prefs.size_preferences == {"Acme": "M", "Zara": "L"}

        repeat = await engine.process_text_turn("I'm a medium in Acme", user_id="u1")
        assert not repeat.preferences_saved
        assert ACKNOWLEDGEMENT not in repeat.text

    @pytest.mark.asyncio
    async def test_remembered_size_used_in_sizing_answer(self):
        engine = make_engine()
        await engine.process_text_turn("I'm a medium in Acme", user_id="u1")

        result = await engine.process_text_turn("What size should I get in Acme jeans?", user_id="u1")
        assert result.intent == "ask_about_size"
        assert "a M in Acme" in result.text

    @pytest.mark.asyncio
    async def test_confident_text_reply_uses_steadier_voice(self):
        synth = FakeSynthesizer("elevenlabs")
        router = FakeRouter(intent={"intent": "search_product", "entities": {}, "confidence": 0.95})
        engine = make_engine(synthesizers=[synth], router=router)

        await engine.process_text_turn("dresses", user_id="u1", audio_preferred=True)
        assert synth.settings[-1].stability == 0.7
        assert synth.settings[-1].similarity_boost == 0.85

    @pytest.mark.asyncio
    async def test_unsure_text_reply_uses_default_voice(self):
        synth = FakeSynthesizer("elevenlabs")
        engine = make_engine(synthesizers=[synth])

        await engine.process_text_turn("dresses", user_id="u1", audio_preferred=True)
        assert synth.settings[-1].stability == 0.5
        assert synth.settings[-1].similarity_boost == 0.75

    @pytest.mark.asyncio
    async def test_voice_choice_applies_to_next_spoken_reply(self, audio):
        synth = FakeSynthesizer("elevenlabs")
        engine = make_engine(synthesizers=[synth])

        said = await engine.process_text_turn("Please use George's voice", user_id="u1")
        assert said.preferences_saved

        await engine.process_voice_turn("c1", audio, user_id="u1")
        assert synth.settings[-1].voice_id == GEORGE

    @pytest.mark.asyncio
    async def test_concurrent_turns_leave_coherent_state(self):
        engine = make_engine()
        queries = [f"show me dresses number {i}" for i in range(5)]

        results = await asyncio.gather(*(engine.process_text_turn(q, user_id="u1") for q in queries))
        assert all(r.text for r in results)

        saved = await engine.cache.get(state_key("u1"))
        assert saved["last_message"] in queries
        assert saved["context"]["last_query"] == saved["last_message"]
        assert 1 <= saved["turn_count"] <= 5
        assert len(await engine.store.get(transcript_key("u1"))) == 10


class TestConversationLifecycle:
    @pytest.mark.asyncio
    async def test_start_creates_profile_and_settings(self):
        engine = make_engine()
        state = await engine.start_conversation("u1")

        assert state.conversation_id.startswith("conv_u1_")
        assert state.voice_settings is not None
        assert await engine.store.get("u1-profile") is not None

    @pytest.mark.asyncio
    async def test_start_requires_user(self):
        with pytest.raises(ValidationError):
            await make_engine().start_conversation("")

    @pytest.mark.asyncio
    async def test_end_clears_state(self):
        engine = make_engine()
        state = await engine.start_conversation("u1")

        await engine.end_conversation(state.conversation_id, user_id="u1")
        assert await engine.cache.get(state_key("u1")) is None

    @pytest.mark.asyncio
    async def test_history_is_bounded(self):
        engine = make_engine()
        for i in range(45):
            await engine.store.append(transcript_key("u1"), TranscriptEntry(
                role=Speaker.USER if i % 2 == 0 else Speaker.ASSISTANT,
                message=f"message {i}",
            ).model_dump(mode="json"))

        history = await engine.get_conversation_history("u1")
        assert len(history) == 11
        assert history[0].summary
        assert history[-1].message == "message 44"

        assert len(await engine.get_conversation_history("u1", limit=3)) == 4

    @pytest.mark.asyncio
    async def test_synthesize_speech(self):
        engine = make_engine()
        result = await engine.synthesize_speech("Hello there")
        assert result.audio == b"ID3-fake-audio"
        assert result.source == "elevenlabs"

        with pytest.raises(ValidationError):
            await engine.synthesize_speech("x" * 5000)
