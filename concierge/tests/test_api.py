"""Tests for the HTTP API."""
import base64

import pytest
from fastapi.testclient import TestClient

from api.server import create_app
from core.config import ConfigManager
from core.errors import InvalidVoice, ProviderUnavailable

from fakes import FakeSynthesizer, FakeTranscriber, make_engine, make_wav


def _client(tmp_path, **engine_kwargs):
    engine = make_engine(**engine_kwargs)
    app = create_app(engine, ConfigManager(tmp_path, use_env=False))
    return TestClient(app)


@pytest.fixture
def client(tmp_path):
    with _client(tmp_path) as c:
        yield c


def _b64(audio: bytes) -> str:
    return base64.b64encode(audio).decode("ascii")


class TestHealth:
    def test_health(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["orchestrator"]["in_flight"] == 0
        assert not data["llm_configured"]


class TestConversationRoutes:
    def test_full_conversation(self, client):
        start = client.post("/api/voice/conversation/start", json={"user_id": "u1"})
        assert start.status_code == 200
        conversation_id = start.json()["conversation_id"]

        turn = client.post("/api/voice/conversation/process", json={
            "conversation_id": conversation_id,
            "audio": _b64(make_wav(1.0)),
            "user_id": "u1",
        })
        assert turn.status_code == 200
        body = turn.json()
        assert body["transcript"] == "show me red dresses"
        assert base64.b64decode(body["audio"]) == b"ID3-fake-audio"

        history = client.get("/api/voice/conversation/history/u1")
        assert history.status_code == 200
        assert len(history.json()["history"]) == 2

        end = client.post("/api/voice/conversation/end",
                          json={"conversation_id": conversation_id, "user_id": "u1"})
        assert end.json()["status"] == "ended"

    def test_data_url_audio_accepted(self, client):
        resp = client.post("/api/voice/conversation/process", json={
            "conversation_id": "c1",
            "audio": "data:audio/wav;base64," + _b64(make_wav(1.0)),
        })
        assert resp.status_code == 200

    def test_bad_base64_is_400(self, client):
        resp = client.post("/api/voice/conversation/process",
                           json={"conversation_id": "c1", "audio": "!!not-base64!!"})
        assert resp.status_code == 400

    def test_short_audio_is_400(self, client):
        resp = client.post("/api/voice/conversation/process",
                           json={"conversation_id": "c1", "audio": _b64(b"RIFF")})
        assert resp.status_code == 400

    def test_untranscribable_audio_is_422(self, tmp_path):
        with _client(tmp_path, transcribers=[FakeTranscriber("openai", text="")]) as client:
            resp = client.post("/api/voice/conversation/process", json={
                "conversation_id": "c1",
                "audio": _b64(make_wav(1.0)),
                "user_id": "stranger",
            })
        assert resp.status_code == 422

    def test_negative_history_limit_is_400(self, client):
        assert client.get("/api/voice/conversation/history/u1?limit=-1").status_code == 400


class TestTextRoute:
    def test_text_turn(self, client):
        resp = client.post("/api/voice/text", json={"query": "where is my order", "user_id": "u1"})
        assert resp.status_code == 200
        assert resp.json()["intent"] == "track_order"
        assert resp.json()["audio"] is None

    def test_empty_query_is_400(self, client):
        assert client.post("/api/voice/text", json={"query": ""}).status_code == 400


class TestPreferenceRoutes:
    def test_update_merges(self, client):
        client.put("/api/voice/preferences/u1", json={"size_preferences": {"Acme": "M"}})
        resp = client.put("/api/voice/preferences/u1", json={"size_preferences": {"Zara": "L"}})
        assert resp.json()["size_preferences"] == {"Acme": "M", "Zara": "L"}

        assert client.get("/api/voice/preferences/u1").json()["size_preferences"] == {"Acme": "M", "Zara": "L"}


class TestTTSRoute:
    def test_returns_audio(self, client):
        resp = client.post("/api/voice/tts", json={"text": "Hello there"})
        assert resp.status_code == 200
        assert resp.content == b"ID3-fake-audio"
        assert resp.headers["X-Audio-Source"] == "elevenlabs"

    def test_transient_failure_is_503(self, tmp_path):
        broken = FakeSynthesizer("elevenlabs", error=ProviderUnavailable("elevenlabs", "503"))
        with _client(tmp_path, synthesizers=[broken]) as client:
            assert client.post("/api/voice/tts", json={"text": "Hello"}).status_code == 503

    def test_unknown_voice_is_400(self, tmp_path):
        broken = FakeSynthesizer("elevenlabs", error=InvalidVoice("elevenlabs", "no such voice"))
        with _client(tmp_path, synthesizers=[broken]) as client:
            assert client.post("/api/voice/tts", json={"text": "Hello", "voice_id": "nope"}).status_code == 400
