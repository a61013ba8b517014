from __future__ import annotations

from functools import lru_cache
from typing import Iterable, Optional, Sequence, Tuple

import warnings

import cv2
import numpy as np
from PIL import Image, ImageDraw, ImageFont

from facecam.config import FONT_LIST


_WARNED_NO_CJK_FONT = False

BOX_COLOR = (0, 255, 0)
KNOWN_TEXT_COLOR = (0, 255, 0)
UNKNOWN_TEXT_COLOR = (0, 0, 255)
LABEL_BAND_HEIGHT = 30
LABEL_FONT_SIZE = 16


@lru_cache(maxsize=128)
def _load_font(font_path: str, font_size: int) -> ImageFont.FreeTypeFont:
    return ImageFont.truetype(font_path, font_size)


@lru_cache(maxsize=64)
def _get_best_font(font_size: int) -> ImageFont.ImageFont:
    """Return a cached font that covers CJK on the current OS, else PIL's default."""
    for p in FONT_LIST:
        try:
            return _load_font(p, int(font_size))
        except Exception:
            continue
    return ImageFont.load_default()


def _warn_once_no_cjk_font_if_needed(texts: Iterable[str]) -> None:
    global _WARNED_NO_CJK_FONT
    if _WARNED_NO_CJK_FONT:
        return
    if not any(any(ord(ch) > 127 for ch in t) for t in texts):
        return
    for p in FONT_LIST:
        try:
            _load_font(p, 16)
            return
        except Exception:
            continue
    _WARNED_NO_CJK_FONT = True
    warnings.warn(
        "未找到可用的中文字体文件（FONT_LIST 全部加载失败），非 ASCII 标签可能显示为方块。"
        "建议在 Linux 安装 fonts-noto-cjk，或在 facecam/config.py 的 FONT_LIST 中加入字体路径。",
        RuntimeWarning,
    )


def draw_texts(
    img: np.ndarray,
    items: Sequence[Tuple[str, Tuple[int, int], int, Tuple[int, int, int]]],
) -> None:
    """Draw several unicode texts onto one frame with a single PIL conversion.

    Args:
        img: OpenCV BGR image, modified in-place.
        items: sequence of (text, (x, y), font_size_px, bgr_color)
    """
    if img is None or len(items) == 0:
        return

    try:
        _warn_once_no_cjk_font_if_needed([t for (t, _, _, _) in items])

        pil_img = Image.fromarray(cv2.cvtColor(img, cv2.COLOR_BGR2RGB))
        draw = ImageDraw.Draw(pil_img)
        for text, org, font_size, bgr in items:
            font = _get_best_font(int(font_size))
            draw.text(tuple(org), str(text), font=font, fill=(int(bgr[2]), int(bgr[1]), int(bgr[0])))
        img[:] = cv2.cvtColor(np.array(pil_img), cv2.COLOR_RGB2BGR)
    except (OSError, ValueError):
        # 回退到 OpenCV（非 ASCII 字符可能显示异常）
        for text, org, font_size, bgr in items:
            cv2.putText(
                img,
                str(text),
                tuple(org),
                cv2.FONT_HERSHEY_SIMPLEX,
                max(0.3, int(font_size) / 24.0),
                (int(bgr[0]), int(bgr[1]), int(bgr[2])),
                1,
                cv2.LINE_AA,
            )


def format_label(result) -> str:
    """'alice (42%)' for known faces (distance shown as a percentage), bare label otherwise."""
    if result.is_known and result.distance is not None:
        return f"{result.label} ({int(round(result.distance * 100))}%)"
    return str(result.label)


def draw_detections(frame: np.ndarray, results: Sequence) -> np.ndarray:
    """Draw a box, a dark label band and the label for each DetectionResult (in-place)."""
    if frame is None or not results:
        return frame

    h, w = frame.shape[:2]
    texts = []
    overlay = frame.copy()
    for r in results:
        x1, y1, x2, y2 = r.box.as_int_xyxy()
        # 标签条放在框上方；贴近顶部时放到框内
        band_y1 = y1 - LABEL_BAND_HEIGHT if y1 - LABEL_BAND_HEIGHT >= 0 else y1
        band_y2 = band_y1 + LABEL_BAND_HEIGHT
        cv2.rectangle(overlay, (max(0, x1), max(0, band_y1)), (min(w - 1, x2), min(h - 1, band_y2)), (0, 0, 0), -1)
        color = KNOWN_TEXT_COLOR if r.is_known else UNKNOWN_TEXT_COLOR
        texts.append((format_label(r), (x1 + 5, band_y1 + 6), LABEL_FONT_SIZE, color))

    # 标签条 70% 不透明
    cv2.addWeighted(overlay, 0.7, frame, 0.3, 0, dst=frame)
    for r in results:
        x1, y1, x2, y2 = r.box.as_int_xyxy()
        cv2.rectangle(frame, (x1, y1), (x2, y2), BOX_COLOR, 2)
    draw_texts(frame, texts)
    return frame


def draw_hud(frame: np.ndarray, fps: Optional[float], recognition_active: bool) -> np.ndarray:
    text = f"FPS: {fps:.0f}" if (recognition_active and fps is not None) else "FPS: --"
    draw_texts(frame, [(text, (10, 10), LABEL_FONT_SIZE, (255, 255, 255))])
    return frame


def crop_box(frame: Optional[np.ndarray], box) -> Optional[np.ndarray]:
    """Crop `box` out of `frame`, clipped to the frame. None if nothing is left."""
    if frame is None:
        return None
    h, w = frame.shape[:2]
    x1, y1, x2, y2 = box.as_int_xyxy()
    x1, y1 = max(0, x1), max(0, y1)
    x2, y2 = min(w, x2), min(h, y2)
    if x2 <= x1 or y2 <= y1:
        return None
    return frame[y1:y2, x1:x2].copy()
