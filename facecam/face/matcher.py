from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, List, Optional

import numpy as np

from facecam.config import MATCH_THRESHOLD, UNKNOWN_LABEL
from facecam.utils.math import euclidean_distances

if TYPE_CHECKING:
    from facecam.face.gallery import LabeledFace


@dataclass
class MatcherConfig:
    # Euclidean distance threshold: best distance <= threshold counts as a match.
    threshold: float = MATCH_THRESHOLD
    unknown_label: str = UNKNOWN_LABEL


@dataclass(frozen=True)
class FaceMatch:
    label: str
    distance: Optional[float]
    is_unknown: bool


class FaceMatcher:
    """Read-only nearest-label index over a gallery snapshot.

    The gallery is flattened once into an (N, D) matrix plus a row -> label id map,
    so a lookup is one vectorized distance pass and a segmented mean. Instances are
    never updated; the gallery builds a new one after each change.
    """

    def __init__(self, entries: Iterable["LabeledFace"], config: Optional[MatcherConfig] = None):
        self.config = config or MatcherConfig()

        labels: List[str] = []
        mats: List[np.ndarray] = []
        ids: List[np.ndarray] = []
        dim = 0

        for entry in entries:
            mat = np.stack([np.asarray(s, dtype=np.float64) for s in entry.signatures], axis=0)
            if dim == 0:
                dim = int(mat.shape[1])
            if int(mat.shape[1]) != dim:
                raise ValueError(f"signature dim mismatch for '{entry.label}': {mat.shape[1]} != {dim}")
            labels.append(entry.label)
            mats.append(mat)
            ids.append(np.full((int(mat.shape[0]),), len(labels) - 1, dtype=np.int64))

        if not mats:
            raise ValueError("FaceMatcher needs at least one labeled face")

        self._labels = labels
        self._dim = dim
        self._matrix = np.ascontiguousarray(np.concatenate(mats, axis=0))
        self._matrix.setflags(write=False)
        self._label_ids = np.concatenate(ids, axis=0)
        self._counts = np.bincount(self._label_ids, minlength=len(labels)).astype(np.float64)

    @property
    def labels(self) -> List[str]:
        return list(self._labels)

    @property
    def dim(self) -> int:
        return self._dim

    def distances(self, signature: np.ndarray) -> np.ndarray:
        """Per-label mean distance, aligned with `labels`."""
        q = np.asarray(signature, dtype=np.float64).reshape(-1)
        if q.shape[0] != self._dim:
            raise ValueError(f"signature dim {q.shape[0]} != gallery dim {self._dim}")
        row_dists = euclidean_distances(self._matrix, q)
        sums = np.bincount(self._label_ids, weights=row_dists, minlength=len(self._labels))
        return sums / self._counts

    def find_best_match(self, signature: np.ndarray) -> FaceMatch:
        per_label = self.distances(signature)
        # argmin 取第一个最小值：并列时按插入顺序
        best_idx = int(np.argmin(per_label))
        best_dist = float(per_label[best_idx])
        if best_dist <= float(self.config.threshold):
            return FaceMatch(label=self._labels[best_idx], distance=best_dist, is_unknown=False)
        return FaceMatch(label=self.config.unknown_label, distance=best_dist, is_unknown=True)


def match_face(
    matcher: Optional[FaceMatcher],
    signature: np.ndarray,
    unknown_label: str = UNKNOWN_LABEL,
) -> FaceMatch:
    """Label a signature; with no matcher every face is unknown."""
    if matcher is None:
        return FaceMatch(label=unknown_label, distance=None, is_unknown=True)
    return matcher.find_best_match(signature)
