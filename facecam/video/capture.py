from __future__ import annotations

import asyncio
import warnings
from dataclasses import dataclass, field, replace
from typing import Callable, Optional

import numpy as np

from facecam.config import CAPTURE_MIN_CONFIDENCE
from facecam.errors import InvalidInput, MultipleFacesWarning, NoFaceDetected
from facecam.face.detection import ACCURATE_PROFILE, BoundingBox, DetectorProfile, FaceEngine
from facecam.face.gallery import FaceGallery, normalize_label
from facecam.utils.draw import crop_box
from facecam.utils.log import get_logger
from facecam.video.session import RecognitionSession
from facecam.video.source import VideoSource

logger = get_logger(__name__)


@dataclass
class CaptureConfig:
    profile: DetectorProfile = field(default_factory=lambda: ACCURATE_PROFILE)
    min_confidence: float = CAPTURE_MIN_CONFIDENCE

    def effective_profile(self) -> DetectorProfile:
        return replace(self.profile, min_confidence=float(self.min_confidence))


@dataclass(frozen=True)
class CaptureResult:
    label: str
    box: BoundingBox
    # True when the label already existed and its signature was overwritten.
    replaced: bool
    multiple_faces: bool
    preview: Optional[np.ndarray] = None


class CaptureFlow:
    """Bind the face currently in front of the camera to a label.

    Captures are serialized with each other, and the recognition session is paused
    (and its in-flight tick drained) for the whole capture so no tick reads the
    gallery mid-update. The session is put back in its prior state on every exit
    path. When `resume_policy` is set it decides whether to restart the session
    afterwards, so a toggle made mid-capture is honoured.
    """

    def __init__(
        self,
        source: VideoSource,
        engine: FaceEngine,
        gallery: FaceGallery,
        session: RecognitionSession,
        config: Optional[CaptureConfig] = None,
        resume_policy: Optional[Callable[[], bool]] = None,
    ):
        self.source = source
        self.engine = engine
        self.gallery = gallery
        self.session = session
        self.config = config or CaptureConfig()
        self.resume_policy = resume_policy
        self._lock = asyncio.Lock()

    @property
    def capturing(self) -> bool:
        return self._lock.locked()

    async def capture(self, label: str) -> CaptureResult:
        if not self.source.is_active:
            raise InvalidInput("摄像头未启动，无法采集人脸")
        name = normalize_label(label)

        async with self._lock:
            was_running = self.session.is_running
            if was_running:
                await self.session.pause()
            try:
                return await self._capture_locked(name)
            finally:
                resume = self.resume_policy() if self.resume_policy is not None else was_running
                if resume:
                    self.session.start()

    async def _capture_locked(self, name: str) -> CaptureResult:
        logger.info(f"采集人脸: {name}...")
        frame = await self.source.read_frame()
        if frame is None:
            raise NoFaceDetected("视频源暂无可用画面")

        faces = await self.engine.detect(frame, self.config.effective_profile())
        if not faces:
            raise NoFaceDetected("未检测到人脸，请重试")

        multiple = len(faces) > 1
        if multiple:
            warnings.warn(
                f"检测到 {len(faces)} 张人脸，使用置信度最高的一张",
                MultipleFacesWarning,
                stacklevel=3,
            )

        best = faces[0]
        replaced = await self.gallery.add_or_update(name, best.signature)
        return CaptureResult(
            label=name,
            box=best.box,
            replaced=replaced,
            multiple_faces=multiple,
            preview=crop_box(frame, best.box),
        )
