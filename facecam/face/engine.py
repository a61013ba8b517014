from __future__ import annotations

import asyncio
import io
import logging
import threading
from contextlib import redirect_stderr, redirect_stdout
from typing import Dict, List, Tuple

import numpy as np
import torch

from insightface.app import FaceAnalysis

from facecam.config import INSIGHTFACE_MATCH_THRESHOLD, RECOGNITION_MODEL
from facecam.errors import InferenceError
from facecam.face.detection import ACCURATE_PROFILE, FAST_PROFILE, BoundingBox, DetectedFace, DetectorProfile
from facecam.utils.log import get_logger, suppress_fds
from facecam.utils.math import as_signature, l2_normalize

logger = get_logger(__name__)

# 进程内模型缓存：同一 det_size / providers 只初始化一次
_FACEAPP_CACHE: Dict[Tuple, FaceAnalysis] = {}
_FACEAPP_LOCK = threading.Lock()


def _resolve_providers(device: str) -> Tuple[List[str], int]:
    if device == "auto":
        try:
            device = "gpu" if torch.cuda.is_available() else "cpu"
        except Exception:
            device = "cpu"
    if device == "gpu":
        return ["CUDAExecutionProvider", "CPUExecutionProvider"], 0
    return ["CPUExecutionProvider"], -1


class InsightFaceEngine:
    """FaceEngine backed by InsightFace FaceAnalysis (detection + recognition).

    One FaceAnalysis per det_size; models load lazily on first use. Inference runs in a
    worker thread so the event loop keeps ticking while a frame is processed.
    """

    # 该模型 signature 尺度下的默认匹配阈值（欧氏距离）
    default_threshold = INSIGHTFACE_MATCH_THRESHOLD

    def __init__(self, model_name: str = RECOGNITION_MODEL, device: str = "auto"):
        self.model_name = model_name
        self.device = device
        self.providers, self.ctx_id = _resolve_providers(device)

    def _get_app(self, det_size: int) -> FaceAnalysis:
        key = (self.model_name, tuple(self.providers), int(self.ctx_id), int(det_size))
        with _FACEAPP_LOCK:
            app = _FACEAPP_CACHE.get(key)
            if app is not None:
                return app
            with suppress_fds(enabled=not logger.isEnabledFor(logging.DEBUG)):
                app = FaceAnalysis(
                    name=self.model_name,
                    providers=self.providers,
                    allowed_modules=["detection", "recognition"],
                )
            buf = io.StringIO()
            with redirect_stdout(buf), redirect_stderr(buf):
                app.prepare(ctx_id=self.ctx_id, det_size=(int(det_size), int(det_size)))
            _FACEAPP_CACHE[key] = app
            logger.info(f"已加载 InsightFace 模型: {self.model_name}, det_size={det_size}, providers={self.providers}")
            return app

    def warmup(self, *profiles: DetectorProfile) -> None:
        for profile in profiles or (FAST_PROFILE, ACCURATE_PROFILE):
            self._get_app(profile.det_size)

    def _detect_sync(self, frame: np.ndarray, profile: DetectorProfile) -> List[DetectedFace]:
        app = self._get_app(profile.det_size)
        faces = app.get(frame) or []

        out: List[DetectedFace] = []
        for face in faces:
            score = float(getattr(face, "det_score", 1.0))
            if score < float(profile.min_confidence):
                continue
            emb = getattr(face, "embedding", None)
            if emb is None:
                continue
            out.append(
                DetectedFace(
                    box=BoundingBox.from_xyxy(face.bbox),
                    signature=as_signature(l2_normalize(np.asarray(emb, dtype=np.float32).reshape(-1))),
                    score=score,
                )
            )
        # 稳定排序：置信度高的在前
        out.sort(key=lambda f: -f.score)
        return out

    async def detect(self, frame: np.ndarray, profile: DetectorProfile) -> List[DetectedFace]:
        try:
            return await asyncio.to_thread(self._detect_sync, frame, profile)
        except Exception as e:
            raise InferenceError(f"{profile.name} detection failed: {e}") from e
