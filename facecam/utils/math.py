from __future__ import annotations

from typing import Iterable, Union

import numpy as np


def l2_normalize(vec: np.ndarray, eps: float = 1e-12) -> np.ndarray:
    """L2-normalize a vector (or 2D array row-wise) safely."""
    arr = np.asarray(vec, dtype=np.float32)
    if arr.ndim == 1:
        denom = float(np.linalg.norm(arr))
        if denom < eps:
            return arr
        return arr / denom
    if arr.ndim == 2:
        norms = np.linalg.norm(arr, axis=1, keepdims=True)
        norms = np.maximum(norms, eps)
        return arr / norms
    raise ValueError(f"Unsupported ndim={arr.ndim}")


def as_signature(values: Union[np.ndarray, Iterable[float]]) -> np.ndarray:
    """Return a read-only float64 copy of a face signature.

    float64 keeps JSON round-trips exact (float32 engine output widens losslessly).
    """
    arr = np.array(values, dtype=np.float64)
    if arr.ndim != 1 or arr.size == 0:
        raise ValueError(f"signature must be a non-empty 1-D vector, got shape={arr.shape}")
    if not np.all(np.isfinite(arr)):
        raise ValueError("signature contains non-finite values")
    arr.setflags(write=False)
    return arr


def euclidean_distances(matrix: np.ndarray, vec: np.ndarray) -> np.ndarray:
    """Row-wise Euclidean distance between an (N, D) matrix and a (D,) vector."""
    diff = np.asarray(matrix, dtype=np.float64) - np.asarray(vec, dtype=np.float64).reshape(1, -1)
    return np.sqrt(np.einsum("ij,ij->i", diff, diff))
