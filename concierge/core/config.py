import json
import os
from pathlib import Path
from typing import Optional

from loguru import logger
from pydantic import BaseModel, Field


class APIKeysConfig(BaseModel):
    openai: str = ""
    claude: str = ""
    gemini: str = ""
    elevenlabs: str = ""


class ProviderConfig(BaseModel):
    llm: str = "openai"  # "openai", "claude", or "gemini"
    openai_model: str = "gpt-4o-mini"
    claude_model: str = "claude-haiku-4-5-20251001"
    gemini_model: str = "gemini-1.5-flash"
    whisper_model: str = "whisper-1"
    elevenlabs_stt_model: str = "scribe_v1"


class VoiceConfig(BaseModel):
    default_voice_id: str = "21m00Tcm4TlvDq8ikWAM"  # Rachel
    model_id: str = "eleven_multilingual_v2"
    stability: float = 0.5
    similarity_boost: float = 0.8
    style: float = 0.5
    use_speaker_boost: bool = True
    # Spoken voice names -> provider voice ids
    catalog: dict[str, str] = Field(default_factory=lambda: {
        "rachel": "21m00Tcm4TlvDq8ikWAM",
        "george": "JBFqnCBsd6RMkjVDRZzb",
        "adam": "pNInz6obpgDQGcFmaJgB",
        "bella": "EXAVITQu4vr4xnSDxMaL",
        "female": "21m00Tcm4TlvDq8ikWAM",
        "woman": "21m00Tcm4TlvDq8ikWAM",
        "male": "JBFqnCBsd6RMkjVDRZzb",
        "man": "JBFqnCBsd6RMkjVDRZzb",
    })
    local_voice: str = "en_US-lessac-medium"
    local_sample_rate: int = 22050
    max_text_chars: int = 2500


class AudioConfig(BaseModel):
    max_bytes: int = 25 * 1024 * 1024  # Whisper upload limit
    min_bytes: int = 256
    min_duration_seconds: float = 0.3  # only checked for WAV input


class CacheConfig(BaseModel):
    conversation_ttl: int = 3600
    voice_settings_ttl: int = 3600
    preferences_ttl: int = 86400
    voice_turn_ttl: int = 300
    transcription_ttl: int = 3600
    speech_ttl: int = 86400


class RetryConfig(BaseModel):
    turn_attempts: int = 3
    synthesis_attempts: int = 3
    base_delay_seconds: float = 1.0
    multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt + 1`` (attempt is 0-based)."""
        return self.base_delay_seconds * (self.multiplier ** attempt)


class CircuitConfig(BaseModel):
    failure_threshold: int = 5
    recovery_timeout_seconds: float = 30.0


class TimeoutConfig(BaseModel):
    default: float = 30.0
    transcription: float = 30.0
    llm: float = 20.0
    synthesis: float = 30.0
    voice_turn: float = 120.0


class ConversationConfig(BaseModel):
    history_window: int = 10
    context_prompt_turns: int = 3
    max_query_chars: int = 2000
    low_priority_concurrency: int = 2


class StorageConfig(BaseModel):
    backend: str = "file"  # "memory", "file", or "redis"
    redis_url: str = ""
    encryption_secret: str = ""


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8080


class AppConfig(BaseModel):
    api_keys: APIKeysConfig = Field(default_factory=APIKeysConfig)
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    voice: VoiceConfig = Field(default_factory=VoiceConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    circuit: CircuitConfig = Field(default_factory=CircuitConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    conversation: ConversationConfig = Field(default_factory=ConversationConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)


# Environment variable -> (section, field). Env wins over the config file.
ENV_OVERRIDES = {
    "OPENAI_API_KEY": ("api_keys", "openai"),
    "ANTHROPIC_API_KEY": ("api_keys", "claude"),
    "GEMINI_API_KEY": ("api_keys", "gemini"),
    "ELEVENLABS_API_KEY": ("api_keys", "elevenlabs"),
    "ELEVEN_LABS_API_KEY": ("api_keys", "elevenlabs"),  # legacy name
    "CONCIERGE_LLM_PROVIDER": ("provider", "llm"),
    "CONCIERGE_REDIS_URL": ("storage", "redis_url"),
    "CONCIERGE_STORAGE_BACKEND": ("storage", "backend"),
    "CONCIERGE_ENCRYPTION_SECRET": ("storage", "encryption_secret"),
}


class ConfigManager:
    """Manages application configuration with optional encrypted persistence."""

    def __init__(self, data_dir: Path, use_env: bool = True):
        self.data_dir = data_dir
        self.config_path = data_dir / "config.json"
        self.use_env = use_env
        self._config: Optional[AppConfig] = None
        self._encryption = None

    @property
    def config(self) -> AppConfig:
        if self._config is None:
            self._config = self._load()
        return self._config

    def set_encryption(self, encryption):
        """Attach an encryption handler for the config file."""
        self._encryption = encryption

    def _load(self) -> AppConfig:
        """Load config from disk. Returns defaults if no config exists."""
        data: dict = {}
        if self.config_path.exists():
            try:
                raw = self.config_path.read_text()
                if self._encryption:
                    raw = self._encryption.decrypt(raw)
                data = json.loads(raw)
                logger.info("Configuration loaded from {}", self.config_path)
            except Exception as e:
                logger.error("Failed to load config: {}. Using defaults.", e)
                data = {}
        else:
            logger.info("No existing config found. Using defaults.")

        if self.use_env:
            self._apply_env(data)
        return AppConfig(**data)

    @staticmethod
    def _apply_env(data: dict) -> None:
        for var, (section, field) in ENV_OVERRIDES.items():
            value = os.environ.get(var)
            if value:
                data.setdefault(section, {})[field] = value

    def save(self) -> None:
        """Persist current config to disk."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        raw = self.config.model_dump_json(indent=2)
        if self._encryption:
            raw = self._encryption.encrypt(raw)
        self.config_path.write_text(raw)
        logger.debug("Configuration saved to {}", self.config_path)

    def update(self, **kwargs) -> AppConfig:
        """Update top-level config sections and save."""
        current = self.config.model_dump()
        for key, value in kwargs.items():
            if key in current:
                if isinstance(current[key], dict) and isinstance(value, dict):
                    current[key].update(value)
                else:
                    current[key] = value
        self._config = AppConfig(**current)
        self.save()
        return self._config

    def update_nested(self, section: str, **kwargs) -> AppConfig:
        """Update fields within a nested config section."""
        current = self.config.model_dump()
        if section in current and isinstance(current[section], dict):
            current[section].update(kwargs)
        self._config = AppConfig(**current)
        self.save()
        return self._config

    def reset(self) -> None:
        """Reset config to defaults."""
        self._config = AppConfig()
        if self.config_path.exists():
            self.config_path.unlink()
        logger.info("Configuration reset to defaults.")

    @property
    def has_llm(self) -> bool:
        return bool(getattr(self.config.api_keys, self.config.provider.llm, ""))

    @property
    def has_elevenlabs(self) -> bool:
        return bool(self.config.api_keys.elevenlabs)
