from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, List, Optional

from facecam.config import TICK_INTERVAL
from facecam.errors import InferenceError
from facecam.face.detection import FAST_PROFILE, BoundingBox, DetectorProfile, FaceEngine
from facecam.face.gallery import FaceGallery
from facecam.face.matcher import match_face
from facecam.utils.log import get_logger
from facecam.video.source import VideoSource

logger = get_logger(__name__)


@dataclass(frozen=True)
class DetectionResult:
    box: BoundingBox
    label: str
    # None when the gallery is empty (no matcher to measure against).
    distance: Optional[float] = None
    is_known: bool = False


@dataclass
class SessionConfig:
    # 轮询周期（秒）
    interval: float = TICK_INTERVAL
    profile: DetectorProfile = field(default_factory=lambda: FAST_PROFILE)
    # FPS 统计窗口（秒）
    fps_window: float = 1.0


class SessionState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


class FpsMeter:
    """Frames emitted per second over a sliding window."""

    def __init__(self, window: float = 1.0, clock: Callable[[], float] = time.perf_counter):
        self.window = float(window)
        self._clock = clock
        self._stamps: Deque[float] = deque()

    def tick(self) -> None:
        now = self._clock()
        self._stamps.append(now)
        self._trim(now)

    def _trim(self, now: float) -> None:
        while self._stamps and now - self._stamps[0] > self.window:
            self._stamps.popleft()

    def reset(self) -> None:
        self._stamps.clear()

    @property
    def fps(self) -> float:
        self._trim(self._clock())
        if self.window <= 0:
            return 0.0
        return len(self._stamps) / self.window


ResultsCallback = Callable[[List[DetectionResult]], None]


class RecognitionSession:
    """Polling recognition loop: frame -> engine -> matcher -> results.

    States are IDLE and RUNNING. While RUNNING a loop task fires a tick every
    `config.interval` seconds. At most one engine call is in flight; a tick that
    comes due while the previous one is still waiting on the engine is skipped,
    not queued. Every start/stop bumps a generation counter, and a tick only emits
    if its generation is still current, so results resolving after stop() are
    dropped.
    """

    def __init__(
        self,
        source: VideoSource,
        engine: FaceEngine,
        gallery: FaceGallery,
        on_results: Optional[ResultsCallback] = None,
        config: Optional[SessionConfig] = None,
    ):
        self.source = source
        self.engine = engine
        self.gallery = gallery
        self.on_results = on_results
        self.config = config or SessionConfig()

        self.state = SessionState.IDLE
        self.last_results: List[DetectionResult] = []
        self.skipped_ticks = 0
        self.ticks = 0
        self._generation = 0
        self._loop_task: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Task] = None
        self._fps = FpsMeter(self.config.fps_window)

    @property
    def is_running(self) -> bool:
        return self.state is SessionState.RUNNING

    @property
    def fps(self) -> float:
        return self._fps.fps if self.is_running else 0.0

    def start(self) -> bool:
        """IDLE -> RUNNING if the video source is active. Returns whether running."""
        if self.is_running:
            return True
        if not self.source.is_active:
            logger.warning("视频源未启动，无法开始识别")
            return False
        self._generation += 1
        self.state = SessionState.RUNNING
        self._fps.reset()
        self._loop_task = asyncio.get_running_loop().create_task(self._run(self._generation))
        logger.info("人脸识别已启动")
        return True

    def stop(self) -> None:
        """RUNNING -> IDLE. No tick starts after this returns."""
        if not self.is_running:
            return
        self._generation += 1
        self.state = SessionState.IDLE
        task, self._loop_task = self._loop_task, None
        if task is not None:
            task.cancel()
        self.last_results = []
        logger.info("人脸识别已停止")

    async def pause(self) -> None:
        """stop() and wait for the in-flight tick (its result is discarded)."""
        self.stop()
        await self.drain()

    async def drain(self) -> None:
        inflight = self._inflight
        if inflight is None or inflight.done():
            return
        # tick 内部已处理 InferenceError；这里只等待其结束
        await asyncio.wait([inflight])

    async def _run(self, generation: int) -> None:
        while generation == self._generation:
            if self._inflight is not None and not self._inflight.done():
                self.skipped_ticks += 1
            else:
                self._inflight = asyncio.get_running_loop().create_task(self._tick(generation))
            await asyncio.sleep(self.config.interval)

    async def run_once(self) -> Optional[List[DetectionResult]]:
        """Run a single tick now, honouring the single-flight guard."""
        if self._inflight is not None and not self._inflight.done():
            self.skipped_ticks += 1
            return None
        self._inflight = asyncio.get_running_loop().create_task(self._tick(self._generation))
        return await self._inflight

    async def _tick(self, generation: int) -> Optional[List[DetectionResult]]:
        if not self.source.is_ready:
            return None
        try:
            frame = await self.source.read_frame()
        except Exception as e:
            logger.warning(f"读取视频帧失败，本次跳过: {e}")
            return None
        if frame is None:
            return None
        if generation != self._generation:
            return None

        self.ticks += 1
        try:
            faces = await self.engine.detect(frame, self.config.profile)
        except InferenceError as e:
            logger.warning(f"识别失败，本帧跳过: {e}")
            faces = []
        except Exception:
            logger.exception("人脸引擎异常，本帧按无人脸处理")
            faces = []

        if generation != self._generation:
            logger.debug("会话已停止/暂停，丢弃迟到的检测结果")
            return None

        # 匹配器在 await 之后读取，保证使用最新图库
        matcher = self.gallery.matcher()
        unknown = self.gallery.matcher_config.unknown_label
        results: List[DetectionResult] = []
        for face in faces:
            try:
                m = match_face(matcher, face.signature, unknown)
            except ValueError as e:
                logger.warning(f"signature 与图库不兼容，按未知处理: {e}")
                m = match_face(None, face.signature, unknown)
            results.append(DetectionResult(box=face.box, label=m.label, distance=m.distance, is_known=not m.is_unknown))

        self._emit(results)
        return results

    def _emit(self, results: List[DetectionResult]) -> None:
        self.last_results = results
        self._fps.tick()
        if self.on_results is None:
            return
        try:
            self.on_results(results)
        except Exception:
            logger.exception("on_results 回调异常")
