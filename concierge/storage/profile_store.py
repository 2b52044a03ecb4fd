import asyncio
import copy
import hashlib
import json
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

from cryptography.fernet import InvalidToken
from loguru import logger

from storage.encryption import DataEncryption


class ProfileStore(ABC):
    """Durable per-user storage: profiles, preferences and transcript logs.

    ``append`` is monotonic; the store never compacts a log on its own.
    ``get`` on an appended key returns the list of entries in append order.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        ...

    @abstractmethod
    async def append(self, key: str, entry: Any) -> None:
        ...


class InMemoryProfileStore(ProfileStore):
    def __init__(self):
        self._values: dict[str, Any] = {}

    async def get(self, key: str) -> Optional[Any]:
        value = self._values.get(key)
        return copy.deepcopy(value) if value is not None else None

    async def set(self, key: str, value: Any) -> None:
        self._values[key] = copy.deepcopy(value)

    async def append(self, key: str, entry: Any) -> None:
        existing = self._values.get(key)
        if not isinstance(existing, list):
            existing = [] if existing is None else [existing]
        existing.append(copy.deepcopy(entry))
        self._values[key] = existing


_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]+")


class JsonFileProfileStore(ProfileStore):
    """File-backed store: ``set`` keys are JSON documents, ``append`` keys are JSONL logs.

    With an encryption handler every document and every log line is stored
    encrypted.
    """

    def __init__(self, data_dir: Path, encryption: Optional[DataEncryption] = None):
        self.data_dir = data_dir
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._encryption = encryption
        self._locks: dict[str, asyncio.Lock] = {}

    def _path(self, key: str, suffix: str) -> Path:
        digest = hashlib.sha1(key.encode()).hexdigest()[:8]
        return self.data_dir / f"{_UNSAFE.sub('_', key)[:80]}-{digest}{suffix}"

    def _lock(self, key: str) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def _encode(self, value: Any) -> str:
        raw = json.dumps(value)
        return self._encryption.encrypt(raw) if self._encryption else raw

    def _decode(self, raw: str) -> Any:
        if self._encryption:
            raw = self._encryption.decrypt(raw)
        return json.loads(raw)

    async def get(self, key: str) -> Optional[Any]:
        doc_path = self._path(key, ".json")
        if doc_path.exists():
            return self._decode(doc_path.read_text())

        log_path = self._path(key, ".jsonl")
        if not log_path.exists():
            return None

        entries = []
        with open(log_path) as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(self._decode(line))
                except (json.JSONDecodeError, InvalidToken) as e:
                    logger.warning("Skipping unreadable log line in {}: {}", log_path.name, e)
        return entries

    async def set(self, key: str, value: Any) -> None:
        async with self._lock(key):
            path = self._path(key, ".json")
            tmp = path.with_suffix(".tmp")
            tmp.write_text(self._encode(value))
            tmp.replace(path)
        logger.debug("Profile store set: {}", key)

    async def append(self, key: str, entry: Any) -> None:
        async with self._lock(key):
            with open(self._path(key, ".jsonl"), "a") as f:
                f.write(self._encode(entry) + "\n")
        logger.debug("Profile store append: {}", key)
