from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np
import pytest

# Ensure repo root is on sys.path so tests can import `facecam` without installing.
repo_root = Path(__file__).resolve().parents[1]
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from facecam.face.detection import BoundingBox, DetectedFace, DetectorProfile  # noqa: E402
from facecam.face.gallery import FaceGallery  # noqa: E402
from facecam.face.store import MemoryKeyValueStore, SignatureStore  # noqa: E402

DIM = 8


def make_signature(seed: int, dim: int = DIM) -> np.ndarray:
    """Deterministic signature; distinct seeds land far apart (> 0.6)."""
    vec = np.zeros((dim,), dtype=np.float64)
    vec[seed % dim] = 1.0
    vec[(seed + 1) % dim] = 0.25 * (seed // dim)
    return vec


def make_face(seed: int, x: float = 10.0, score: float = 0.9) -> DetectedFace:
    return DetectedFace(
        box=BoundingBox(x=x, y=20.0, width=50.0, height=60.0),
        signature=make_signature(seed),
        score=score,
    )


class FakeVideoSource:
    def __init__(self, active: bool = True, ready: bool = True):
        self.active = active
        self.ready = ready
        self.frame = np.zeros((120, 160, 3), dtype=np.uint8)
        self.reads = 0

    @property
    def is_active(self) -> bool:
        return self.active

    @property
    def is_ready(self) -> bool:
        return self.active and self.ready

    async def read_frame(self) -> Optional[np.ndarray]:
        self.reads += 1
        if not self.is_ready:
            return None
        return self.frame.copy()

    async def open(self) -> None:
        self.active = True

    async def close(self) -> None:
        self.active = False


class FakeEngine:
    """Scripted FaceEngine.

    `faces` is returned for every call unless `error` is set. When `gate` is set,
    detect() blocks on it, which simulates inference slower than the tick period.
    `gates` does the same for a single profile name only.
    """

    def __init__(self, faces: Optional[List[DetectedFace]] = None):
        self.faces: List[DetectedFace] = list(faces or [])
        self.error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.gates: Dict[str, asyncio.Event] = {}
        self.calls: List[DetectorProfile] = []
        self.started = asyncio.Event()
        self.inflight = 0
        self.max_inflight = 0

    async def detect(self, frame, profile: DetectorProfile) -> List[DetectedFace]:
        self.calls.append(profile)
        self.inflight += 1
        self.max_inflight = max(self.max_inflight, self.inflight)
        self.started.set()
        try:
            gate = self.gates.get(profile.name, self.gate)
            if gate is not None:
                await gate.wait()
            else:
                await asyncio.sleep(0)
            if self.error is not None:
                raise self.error
            return list(self.faces)
        finally:
            self.inflight -= 1


class FailingKeyValueStore(MemoryKeyValueStore):
    def __init__(self):
        super().__init__()
        self.fail_writes = True
        self.writes = 0

    def set(self, key: str, value: str) -> None:
        self.writes += 1
        if self.fail_writes:
            raise OSError("disk full")
        super().set(key, value)


@pytest.fixture
def kv() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def gallery(kv: MemoryKeyValueStore) -> FaceGallery:
    return FaceGallery(SignatureStore(kv))


@pytest.fixture
def source() -> FakeVideoSource:
    return FakeVideoSource()


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()
