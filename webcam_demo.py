"""摄像头人脸识别演示：实时识别 + 按键采集/删除人脸。

子命令：
    run     打开摄像头窗口（q 退出, r 暂停/恢复识别, v 开关摄像头, c 采集, d 删除）
    list    列出图库中的 label
    remove  从图库删除一个 label
"""

from __future__ import annotations

import argparse
import asyncio
import json
import threading
import time
from pathlib import Path
from typing import Optional, TextIO

import cv2

from facecam.app import FaceCamApp, FaceCamConfig
from facecam.config import (
    ACCURATE_DET_SIZE,
    CAPTURE_MIN_CONFIDENCE,
    FAST_DET_SIZE,
    GALLERY_FILE,
    GALLERY_STORAGE_KEY,
    MATCH_THRESHOLD,
    RECOGNITION_MODEL,
    TICK_INTERVAL,
)
from facecam.face.detection import DetectorProfile
from facecam.face.gallery import FaceGallery
from facecam.face.matcher import MatcherConfig
from facecam.face.store import JsonFileKeyValueStore, SignatureStore
from facecam.utils.draw import draw_detections, draw_hud
from facecam.utils.log import get_logger, set_level
from facecam.utils.serializer import serialize_detection
from facecam.video.capture import CaptureConfig
from facecam.video.session import SessionConfig
from facecam.video.source import OpenCVVideoSource

logger = get_logger(__name__)

WINDOW_NAME = "facecam"


def resolve_threshold(cli_value: Optional[float], engine=None) -> float:
    """--threshold wins; otherwise the engine's own default for its signature scale."""
    if cli_value is not None:
        return float(cli_value)
    return float(getattr(engine, "default_threshold", MATCH_THRESHOLD))


def _build_gallery(args, engine=None) -> FaceGallery:
    store = SignatureStore(JsonFileKeyValueStore(args.gallery_file), key=args.storage_key)
    threshold = resolve_threshold(args.threshold, engine)
    logger.debug(f"匹配阈值: {threshold:.2f}")
    return FaceGallery(store, matcher_config=MatcherConfig(threshold=threshold))


async def prompt_line(text: str) -> str:
    """Read one line from stdin without blocking the event loop.

    The reader is a daemon thread, not the default executor, so a cancelled prompt
    never keeps asyncio.run() waiting for stdin on exit.
    """
    loop = asyncio.get_running_loop()
    fut: asyncio.Future = loop.create_future()

    def _deliver(value: str) -> None:
        if not fut.done():
            fut.set_result(value)

    def _worker() -> None:
        try:
            value = input(text)
        except EOFError:
            value = ""
        try:
            loop.call_soon_threadsafe(_deliver, value)
        except RuntimeError:
            # 事件循环已关闭（程序退出），丢弃输入
            pass

    threading.Thread(target=_worker, name="facecam-prompt", daemon=True).start()
    return await fut


async def _capture(app: FaceCamApp) -> None:
    label = await prompt_line("Label for captured face: ")
    result = await app.capture_face(label)
    if result is not None and result.preview is not None:
        cv2.imshow(f"{WINDOW_NAME} - {result.label}", result.preview)


async def _delete(app: FaceCamApp) -> None:
    logger.info(f"当前图库: {app.gallery.list()}")
    label = await prompt_line("Label to remove: ")
    if not await app.delete_face(label.strip()):
        logger.info(f"图库中没有: {label.strip()}")


class ResultsWriter:
    """Append each recognition tick as one JSON line."""

    def __init__(self, path: str, source: Optional[OpenCVVideoSource] = None):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.source = source
        self._fh: Optional[TextIO] = self.path.open("a", encoding="utf-8")

    def __call__(self, results) -> None:
        if self._fh is None:
            return
        frame_shape = None
        if self.source is not None and self.source.frame_size[0] > 0:
            w, h = self.source.frame_size
            frame_shape = (h, w)
        record = {
            "ts": round(time.time(), 3),
            "faces": [serialize_detection(r, frame_shape=frame_shape) for r in results],
        }
        self._fh.write(json.dumps(record, ensure_ascii=False) + "\n")

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None


async def run(args) -> None:
    # 延迟导入：list/remove 子命令不需要加载 insightface/torch
    from facecam.face.engine import InsightFaceEngine

    engine = InsightFaceEngine(model_name=args.model, device=args.device)
    fast = DetectorProfile(name="fast", det_size=int(args.det_size_fast))
    accurate = DetectorProfile(name="accurate", det_size=int(args.det_size_accurate))

    logger.info("加载人脸检测/识别模型...")
    await asyncio.to_thread(engine.warmup, fast, accurate)

    config = FaceCamConfig(
        session=SessionConfig(interval=float(args.interval), profile=fast),
        capture=CaptureConfig(profile=accurate, min_confidence=float(args.capture_confidence)),
    )
    source = OpenCVVideoSource(args.source)
    writer = ResultsWriter(args.results_log, source) if args.results_log else None
    app = FaceCamApp(
        source,
        engine,
        _build_gallery(args, engine),
        config=config,
        on_results=writer,
    )
    await app.startup()

    pending = set()
    try:
        while True:
            frame = await app.source.read_frame()
            if frame is not None:
                if app.session.is_running:
                    draw_detections(frame, app.session.last_results)
                draw_hud(frame, app.session.fps, app.session.is_running)
                cv2.imshow(WINDOW_NAME, frame)

            key = cv2.waitKey(1) & 0xFF
            if key == ord("q"):
                break
            if key == ord("r"):
                app.toggle_recognition()
            elif key == ord("v"):
                await app.toggle_camera()
            elif key in (ord("c"), ord("d")) and not pending:
                task = asyncio.create_task(_capture(app) if key == ord("c") else _delete(app))
                pending.add(task)
                task.add_done_callback(pending.discard)
            await asyncio.sleep(0.01)
    finally:
        for task in pending:
            task.cancel()
        await app.shutdown()
        cv2.destroyAllWindows()
        if writer is not None:
            writer.close()
            logger.info(f"识别结果已写入: {writer.path}")
        for entry in reversed(app.status.entries()):
            print(entry)


async def list_faces(args) -> None:
    gallery = _build_gallery(args)
    await gallery.load()
    for label in gallery.list():
        print(label)
    if not len(gallery):
        print("No stored identities")


async def remove_face(args) -> None:
    gallery = _build_gallery(args)
    await gallery.load()
    if await gallery.remove(args.label):
        logger.info(f"已删除: {args.label}")
    else:
        logger.warning(f"图库中没有: {args.label}")


def main() -> None:
    parser = argparse.ArgumentParser(description="摄像头人脸识别演示")
    parser.add_argument("--gallery-file", default=GALLERY_FILE, help="图库 JSON 文件路径")
    parser.add_argument("--storage-key", default=GALLERY_STORAGE_KEY, help="图库在 JSON 文件中的 key")
    parser.add_argument(
        "--threshold",
        "-t",
        type=float,
        default=None,
        help="匹配距离阈值（默认使用识别模型自带的阈值，InsightFace 为 1.10）",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["debug", "info", "warning", "error"],
        help="日志级别（默认 info，也可用环境变量 FACECAM_LOG_LEVEL）",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_run = sub.add_parser("run", help="打开摄像头实时识别")
    p_run.add_argument("--source", "-s", default="0", help="摄像头编号或视频文件路径（默认 0）")
    p_run.add_argument("--model", default=RECOGNITION_MODEL, help="InsightFace 模型名称")
    p_run.add_argument(
        "--device",
        type=str,
        default="auto",
        choices=["auto", "cpu", "gpu"],
        help="计算设备：auto/cpu/gpu（默认 auto：有 CUDA 就用 GPU）",
    )
    p_run.add_argument("--interval", "-i", type=float, default=TICK_INTERVAL, help="识别轮询周期（秒）")
    p_run.add_argument("--det-size-fast", type=int, default=FAST_DET_SIZE, help="轮询检测 det_size")
    p_run.add_argument("--det-size-accurate", type=int, default=ACCURATE_DET_SIZE, help="采集检测 det_size")
    p_run.add_argument(
        "--capture-confidence", type=float, default=CAPTURE_MIN_CONFIDENCE, help="采集时最低检测置信度"
    )
    p_run.add_argument("--results-log", default=None, help="把每次识别结果追加写入 JSONL 文件（可选）")

    sub.add_parser("list", help="列出图库中的 label")
    p_rm = sub.add_parser("remove", help="从图库删除一个 label")
    p_rm.add_argument("label")

    args = parser.parse_args()
    if args.log_level:
        set_level(args.log_level)

    if args.command == "list":
        asyncio.run(list_faces(args))
    elif args.command == "remove":
        asyncio.run(remove_face(args))
    else:
        asyncio.run(run(args))


if __name__ == "__main__":
    st = time.time()
    main()
    logger.info(f"总耗时: {time.time() - st:.2f} 秒")
