"""Application context: one owned object instead of module-level state.

Wires video source, face engine, gallery, recognition session and capture flow
together, and turns the error taxonomy into status-log lines for the UI.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Deque, List, Optional

from facecam.config import STATUS_LOG_LIMIT
from facecam.errors import InferenceError, InvalidInput, NoFaceDetected
from facecam.face.detection import FaceEngine
from facecam.face.gallery import FaceGallery
from facecam.utils.log import get_logger
from facecam.video.capture import CaptureFlow, CaptureConfig, CaptureResult
from facecam.video.session import RecognitionSession, ResultsCallback, SessionConfig
from facecam.video.source import VideoSource

logger = get_logger(__name__)


@dataclass(frozen=True)
class StatusEntry:
    timestamp: datetime
    message: str
    is_error: bool = False

    def __str__(self) -> str:
        return f"[{self.timestamp.strftime('%H:%M:%S')}] {self.message}"


class StatusLog:
    """Bounded, newest-first list of user-facing status lines."""

    def __init__(self, limit: int = STATUS_LOG_LIMIT):
        self._entries: Deque[StatusEntry] = deque(maxlen=int(limit))

    def add(self, message: str, is_error: bool = False) -> StatusEntry:
        entry = StatusEntry(timestamp=datetime.now(), message=message, is_error=is_error)
        self._entries.appendleft(entry)
        if is_error:
            logger.warning(message)
        else:
            logger.info(message)
        return entry

    def entries(self) -> List[StatusEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class FaceCamConfig:
    session: SessionConfig = field(default_factory=SessionConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    # 启动后是否自动开始识别
    recognition_on_start: bool = True


class FaceCamApp:
    def __init__(
        self,
        source: VideoSource,
        engine: FaceEngine,
        gallery: FaceGallery,
        config: Optional[FaceCamConfig] = None,
        on_results: Optional[ResultsCallback] = None,
    ):
        self.config = config or FaceCamConfig()
        self.source = source
        self.engine = engine
        self.gallery = gallery
        self.status = StatusLog()
        self.session = RecognitionSession(source, engine, gallery, on_results=on_results, config=self.config.session)
        # 用户意图：识别是否应处于开启状态（摄像头关闭或采集期间保持记忆）
        self.recognition_enabled = bool(self.config.recognition_on_start)
        self.capture = CaptureFlow(
            source,
            engine,
            gallery,
            self.session,
            config=self.config.capture,
            resume_policy=lambda: self.recognition_enabled,
        )

    async def startup(self) -> None:
        await self.source.open()
        self.status.add("Camera initialized")
        await self.gallery.load()
        self.status.add(f"Loaded {len(self.gallery)} stored identities")
        if self.recognition_enabled and self.session.start():
            self.status.add("Face recognition active")
        self.status.add("System initialized and ready")

    async def shutdown(self) -> None:
        await self.session.pause()
        await self.source.close()

    async def toggle_camera(self) -> bool:
        """Close or reopen the camera. Returns whether it is active afterwards."""
        if self.capture.capturing:
            self.status.add("ERROR: Cannot toggle camera while a capture is in progress", is_error=True)
            return self.source.is_active
        if self.source.is_active:
            await self.session.pause()
            await self.source.close()
            self.status.add("Camera stopped")
            return False
        await self.source.open()
        self.status.add("Camera initialized")
        if self.recognition_enabled:
            self.session.start()
        return True

    def toggle_recognition(self) -> bool:
        """Pause/resume recognition. Returns whether it is running afterwards."""
        if self.capture.capturing:
            # 采集期间会话处于暂停状态：只记录意图，由采集结束时决定是否恢复
            self.recognition_enabled = not self.recognition_enabled
            state = "resume" if self.recognition_enabled else "stay paused"
            self.status.add(f"Face recognition will {state} after capture")
            return False
        if self.session.is_running:
            self.session.stop()
            self.recognition_enabled = False
            self.status.add("Face recognition paused")
            return False
        self.recognition_enabled = True
        if self.session.start():
            self.status.add("Face recognition resumed")
            return True
        self.status.add("ERROR: Camera must be active to run recognition", is_error=True)
        return False

    async def capture_face(self, label: str) -> Optional[CaptureResult]:
        try:
            result = await self.capture.capture(label)
        except (InvalidInput, NoFaceDetected) as e:
            self.status.add(f"ERROR: {e}", is_error=True)
            return None
        except InferenceError as e:
            self.status.add(f"ERROR: Failed to capture face: {e}", is_error=True)
            return None

        if result.multiple_faces:
            self.status.add("WARNING: Multiple faces detected. Using the most prominent face.", is_error=True)
        if result.replaced:
            self.status.add(f"Updated face data for: {result.label}")
        else:
            self.status.add(f"Added new face: {result.label}")
        return result

    async def delete_face(self, label: str) -> bool:
        removed = await self.gallery.remove(label)
        if removed:
            self.status.add(f"Removed face: {label}")
        return removed
