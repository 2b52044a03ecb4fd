import base64
import binascii
from typing import Optional

from fastapi import APIRouter, Request, Response
from pydantic import BaseModel

from core.errors import ValidationError
from core.models import UserVoicePreferences

router = APIRouter()


class StartRequest(BaseModel):
    user_id: str


class ProcessRequest(BaseModel):
    conversation_id: str
    audio: str  # base64-encoded audio
    user_id: Optional[str] = None


class TextRequest(BaseModel):
    query: str
    user_id: Optional[str] = None
    audio_preferred: bool = False


class EndRequest(BaseModel):
    conversation_id: str
    user_id: Optional[str] = None


class PreferencesUpdate(BaseModel):
    voice_preference: Optional[str] = None
    size_preferences: dict[str, str] = {}
    color_preferences: list[str] = []
    style_preferences: list[str] = []
    brand_preferences: list[str] = []


class TTSRequest(BaseModel):
    text: str
    voice_id: Optional[str] = None


def _decode_audio(data: str) -> bytes:
    # Accept data URLs as sent by browsers
    if data.startswith("data:") and "," in data:
        data = data.split(",", 1)[1]
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("Audio must be base64-encoded.")


@router.post("/conversation/start")
async def start_conversation(body: StartRequest, request: Request):
    """Start a conversation and return its state."""
    state = await request.app.state.engine.start_conversation(body.user_id)
    return state.model_dump(mode="json")


@router.post("/conversation/process")
async def process_voice(body: ProcessRequest, request: Request):
    """Run one voice turn. Audio in and out is base64."""
    audio = _decode_audio(body.audio)
    result = await request.app.state.engine.process_voice_turn(
        body.conversation_id, audio, user_id=body.user_id
    )
    return result.to_dict()


@router.post("/text")
async def process_text(body: TextRequest, request: Request):
    result = await request.app.state.engine.process_text_turn(
        body.query, user_id=body.user_id, audio_preferred=body.audio_preferred
    )
    return result.to_dict()


@router.get("/conversation/history/{user_id}")
async def conversation_history(user_id: str, request: Request, limit: int = 10):
    if limit < 0:
        raise ValidationError("limit must not be negative.")
    entries = await request.app.state.engine.get_conversation_history(user_id, limit)
    return {"user_id": user_id, "history": [e.model_dump(mode="json") for e in entries]}


@router.post("/conversation/end")
async def end_conversation(body: EndRequest, request: Request):
    await request.app.state.engine.end_conversation(body.conversation_id, user_id=body.user_id)
    return {"status": "ended", "conversation_id": body.conversation_id}


@router.get("/preferences/{user_id}")
async def get_preferences(user_id: str, request: Request):
    prefs = await request.app.state.engine.get_user_preferences(user_id)
    return prefs.model_dump()


@router.put("/preferences/{user_id}")
async def update_preferences(user_id: str, body: PreferencesUpdate, request: Request):
    """Merge the given preferences into the stored ones."""
    delta = UserVoicePreferences(**body.model_dump())
    prefs = await request.app.state.engine.update_user_preferences(user_id, delta)
    return prefs.model_dump()


@router.post("/tts")
async def text_to_speech(body: TTSRequest, request: Request):
    result = await request.app.state.engine.synthesize_speech(body.text, voice_id=body.voice_id)
    return Response(
        content=result.audio,
        media_type=result.content_type,
        headers={"X-Audio-Source": result.source},
    )
