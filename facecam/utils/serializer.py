from __future__ import annotations

import json
import warnings
from typing import Dict, List, Optional, Sequence, Tuple

from facecam.errors import PersistenceError
from facecam.face.gallery import LabeledFace
from facecam.utils.math import as_signature


def serialize_gallery(entries: Sequence[LabeledFace]) -> str:
    """Encode gallery entries as a JSON array of {label, descriptors}.

    Descriptors are plain number arrays (not typed binary) so the file stays portable.
    """
    data = [
        {
            "label": entry.label,
            "descriptors": [[float(x) for x in sig] for sig in entry.signatures],
        }
        for entry in entries
    ]
    return json.dumps(data, ensure_ascii=False)


def deserialize_gallery(payload: Optional[str]) -> List[LabeledFace]:
    """Decode a stored gallery payload.

    Absent payload -> empty gallery. A payload that is not a JSON array raises
    PersistenceError; individual malformed records are skipped with a warning.
    """
    if payload is None or payload == "":
        return []
    try:
        data = json.loads(payload)
    except (TypeError, ValueError) as e:
        raise PersistenceError(f"gallery payload is not valid JSON: {e}") from e
    if not isinstance(data, list):
        raise PersistenceError(f"gallery payload must be a JSON array, got {type(data).__name__}")

    out: List[LabeledFace] = []
    for i, record in enumerate(data):
        try:
            label = record["label"]
            descriptors = record["descriptors"]
            if not isinstance(label, str) or not isinstance(descriptors, list):
                raise TypeError("label must be str and descriptors a list")
            out.append(LabeledFace.create(label, [as_signature(d) for d in descriptors]))
        except (KeyError, TypeError, ValueError) as e:
            warnings.warn(f"skipping malformed gallery record #{i}: {e}", RuntimeWarning)
            continue
    return out


def serialize_detection(det, frame_shape: Optional[Tuple[int, int]] = None) -> Dict:
    """Serialize a DetectionResult into a JSON-safe dict, optionally with normalized box.

    frame_shape: (h, w)
    """
    x, y, w, h = det.box.as_tuple()
    ed: Dict = {
        "bbox": [int(round(x)), int(round(y)), int(round(w)), int(round(h))],
        "label": str(det.label),
        "distance": float(det.distance) if det.distance is not None else None,
        "known": bool(det.is_known),
    }
    if frame_shape is not None:
        fh, fw = frame_shape[0], frame_shape[1]
        if fh > 0 and fw > 0:
            ed["bbox_norm"] = [round(x / fw, 4), round(y / fh, 4), round(w / fw, 4), round(h / fh, 4)]
        else:
            ed["bbox_norm"] = None
    return ed
