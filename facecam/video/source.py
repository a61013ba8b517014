from __future__ import annotations

import asyncio
import threading
import time
from typing import Optional, Protocol, Union

import cv2
import numpy as np

from facecam.config import CAMERA_HEIGHT, CAMERA_WIDTH
from facecam.utils.log import get_logger

logger = get_logger(__name__)


class VideoSource(Protocol):
    @property
    def is_active(self) -> bool: ...

    @property
    def is_ready(self) -> bool: ...

    async def read_frame(self) -> Optional[np.ndarray]: ...

    async def open(self) -> None: ...

    async def close(self) -> None: ...


def _parse_source(source: Union[int, str]) -> Union[int, str]:
    # "0" / "1" 视为摄像头编号，其余按文件路径或 URL 处理
    if isinstance(source, str) and source.strip().isdigit():
        return int(source.strip())
    return source


class OpenCVVideoSource:
    """Camera (or video file/URL) read through cv2.VideoCapture.

    A grabber thread keeps only the latest decoded frame, so the preview window,
    recognition ticks and capture all see the same "current frame" without
    competing for reads. `is_active` follows open/close; `is_ready` additionally
    requires that at least one frame has been decoded.
    """

    def __init__(self, source: Union[int, str] = 0, width: int = CAMERA_WIDTH, height: int = CAMERA_HEIGHT):
        self.source = _parse_source(source)
        self.width = int(width)
        self.height = int(height)
        self.frame_size = (0, 0)

        self._cap: Optional[cv2.VideoCapture] = None
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._frame: Optional[np.ndarray] = None

    @property
    def is_active(self) -> bool:
        return self._cap is not None

    @property
    def is_ready(self) -> bool:
        with self._lock:
            return self._cap is not None and self._frame is not None

    def _open_sync(self) -> cv2.VideoCapture:
        cap = cv2.VideoCapture(self.source)
        if not cap.isOpened():
            cap.release()
            raise RuntimeError(f"无法打开视频源: {self.source}")
        if isinstance(self.source, int):
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        return cap

    def _grab_loop(self, cap: cv2.VideoCapture, stop: threading.Event) -> None:
        # 视频文件按原始帧率播放，摄像头则阻塞在 read 上
        delay = 0.0
        if not isinstance(self.source, int):
            fps = float(cap.get(cv2.CAP_PROP_FPS) or 0.0)
            delay = 1.0 / fps if fps > 0 else 0.04

        while not stop.is_set():
            ok, frame = cap.read()
            if not ok or frame is None:
                if not isinstance(self.source, int):
                    # 文件播放完毕：回到开头循环播放
                    cap.set(cv2.CAP_PROP_POS_FRAMES, 0)
                time.sleep(0.01)
                continue
            with self._lock:
                self._frame = frame
                self.frame_size = (int(frame.shape[1]), int(frame.shape[0]))
            if delay:
                time.sleep(delay)

    async def open(self) -> None:
        if self._cap is not None:
            return
        cap = await asyncio.to_thread(self._open_sync)
        self._stop = threading.Event()
        self._cap = cap
        self._thread = threading.Thread(target=self._grab_loop, args=(cap, self._stop), daemon=True)
        self._thread.start()
        logger.info(f"摄像头已打开: {self.source}")

    async def read_frame(self) -> Optional[np.ndarray]:
        with self._lock:
            if self._cap is None or self._frame is None:
                return None
            return self._frame.copy()

    async def close(self) -> None:
        cap = self._cap
        if cap is None:
            return
        self._stop.set()
        with self._lock:
            self._cap = None
            self._frame = None
        thread, self._thread = self._thread, None
        if thread is not None:
            await asyncio.to_thread(thread.join, 2.0)
        await asyncio.to_thread(cap.release)
        logger.info("摄像头已关闭")
