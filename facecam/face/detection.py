"""Engine-facing value types and the FaceEngine capability."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Protocol, Tuple

import numpy as np

from facecam.config import ACCURATE_DET_SIZE, CAPTURE_MIN_CONFIDENCE, FAST_DET_SIZE


@dataclass(frozen=True)
class BoundingBox:
    x: float
    y: float
    width: float
    height: float

    @classmethod
    def from_xyxy(cls, bbox) -> "BoundingBox":
        x1, y1, x2, y2 = [float(v) for v in bbox[:4]]
        return cls(x=x1, y=y1, width=max(0.0, x2 - x1), height=max(0.0, y2 - y1))

    def as_tuple(self) -> Tuple[float, float, float, float]:
        return (self.x, self.y, self.width, self.height)

    def as_int_xyxy(self) -> Tuple[int, int, int, int]:
        return (
            int(round(self.x)),
            int(round(self.y)),
            int(round(self.x + self.width)),
            int(round(self.y + self.height)),
        )


@dataclass(frozen=True)
class DetectedFace:
    box: BoundingBox
    signature: np.ndarray
    score: float = 1.0


@dataclass(frozen=True)
class DetectorProfile:
    """Speed/accuracy tradeoff for one detect call."""

    name: str
    det_size: int
    # Faces scoring below this are dropped (0 keeps the detector's own threshold).
    min_confidence: float = 0.0


FAST_PROFILE = DetectorProfile(name="fast", det_size=FAST_DET_SIZE)
ACCURATE_PROFILE = DetectorProfile(name="accurate", det_size=ACCURATE_DET_SIZE, min_confidence=CAPTURE_MIN_CONFIDENCE)


class FaceEngine(Protocol):
    """Detector + describer.

    Engines may also expose `default_threshold`, the match distance that suits
    their signature scale; callers fall back to MATCH_THRESHOLD otherwise.
    """

    async def detect(self, frame: np.ndarray, profile: DetectorProfile) -> List[DetectedFace]:
        """Detect faces and describe them, best-ranked first.

        Raises InferenceError when the model fails.
        """
        ...
