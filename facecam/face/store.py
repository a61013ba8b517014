"""Gallery persistence over a small key-value backend.

The whole gallery lives under one key of a backend with `get(key)` / `set(key, value)`
(sync or async). Sync backends run in a worker thread.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence

from facecam.config import GALLERY_STORAGE_KEY
from facecam.errors import PersistenceError
from facecam.face.gallery import LabeledFace
from facecam.utils.log import get_logger
from facecam.utils.serializer import deserialize_gallery, serialize_gallery

logger = get_logger(__name__)


class KeyValueStore(Protocol):
    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: str) -> Any: ...


class MemoryKeyValueStore:
    """In-process dict backend (tests, throwaway sessions)."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value


class JsonFileKeyValueStore:
    """A JSON object file holding string values, one per key."""

    def __init__(self, path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read_all(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        text = self.path.read_text(encoding="utf-8")
        if not text.strip():
            return {}
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} must contain a JSON object")
        return data

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read_all().get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._read_all()
            data[key] = value
            self.path.parent.mkdir(parents=True, exist_ok=True)
            # 先写临时文件再替换，避免中途崩溃留下半个 JSON
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")
            tmp.replace(self.path)


async def _call(fn, *args):
    if inspect.iscoroutinefunction(fn):
        return await fn(*args)
    result = await asyncio.to_thread(fn, *args)
    if inspect.isawaitable(result):
        result = await result
    return result


class SignatureStore:
    """Reads and writes the whole gallery under a single key."""

    def __init__(self, backend: KeyValueStore, key: str = GALLERY_STORAGE_KEY):
        self.backend = backend
        self.key = key

    async def load(self) -> List[LabeledFace]:
        try:
            payload = await _call(self.backend.get, self.key)
        except Exception as e:
            raise PersistenceError(f"failed to read '{self.key}': {e}") from e
        entries = deserialize_gallery(payload)
        logger.debug(f"读取图库 key={self.key}: {len(entries)} 条")
        return entries

    async def save(self, entries: Sequence[LabeledFace]) -> None:
        body = serialize_gallery(entries)
        try:
            await _call(self.backend.set, self.key, body)
        except Exception as e:
            raise PersistenceError(f"failed to write '{self.key}': {e}") from e
