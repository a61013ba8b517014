from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from facecam.errors import InvalidInput, PersistenceError
from facecam.face.matcher import FaceMatcher, MatcherConfig
from facecam.utils.log import get_logger
from facecam.utils.math import as_signature

if TYPE_CHECKING:
    from facecam.face.store import SignatureStore

logger = get_logger(__name__)


def normalize_label(label) -> str:
    if not isinstance(label, str):
        raise InvalidInput(f"label must be a string, got {type(label).__name__}")
    name = label.strip()
    if not name:
        raise InvalidInput("label is empty")
    return name


@dataclass(frozen=True)
class LabeledFace:
    label: str
    signatures: Tuple[np.ndarray, ...]

    @classmethod
    def create(cls, label: str, signatures: Iterable) -> "LabeledFace":
        sigs = tuple(as_signature(s) for s in signatures)
        if not sigs:
            raise ValueError(f"'{label}' has no signatures")
        dims = {int(s.shape[0]) for s in sigs}
        if len(dims) != 1:
            raise ValueError(f"'{label}' mixes signature dims {sorted(dims)}")
        return cls(label=normalize_label(label), signatures=sigs)

    @property
    def dim(self) -> int:
        return int(self.signatures[0].shape[0])


@dataclass
class GalleryConfig:
    # 当前策略：每个 label 只保留一个 signature，重新采集即覆盖。
    # 调大后 add_or_update 追加并保留最近的 K 个。
    max_signatures_per_label: int = 1


class FaceGallery:
    """In-memory label -> signatures registry with persistence.

    Owns the derived FaceMatcher: every mutation swaps in a freshly built matcher
    before any await, so callers never see new entries with a stale matcher.
    The store is written after every mutation; a failed write is logged and the
    in-memory state stays authoritative.
    """

    def __init__(
        self,
        store: Optional["SignatureStore"] = None,
        matcher_config: Optional[MatcherConfig] = None,
        config: Optional[GalleryConfig] = None,
    ):
        self.store = store
        self.matcher_config = matcher_config or MatcherConfig()
        self.config = config or GalleryConfig()
        self._entries: Dict[str, LabeledFace] = {}
        self._matcher: Optional[FaceMatcher] = None
        self._persist_lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, label) -> bool:
        return label in self._entries

    def list(self) -> List[str]:
        return list(self._entries.keys())

    def entries(self) -> List[LabeledFace]:
        return list(self._entries.values())

    def get(self, label: str) -> Optional[LabeledFace]:
        return self._entries.get(label)

    def matcher(self) -> Optional[FaceMatcher]:
        """Current matcher, or None when the gallery is empty (every face is unknown)."""
        return self._matcher

    def _rebuild_matcher(self) -> None:
        if not self._entries:
            self._matcher = None
            return
        self._matcher = FaceMatcher(self._entries.values(), self.matcher_config)

    def _check_dim(self, label: str, dim: int) -> None:
        for other in self._entries.values():
            if other.label == label:
                continue
            if other.dim != dim:
                raise InvalidInput(f"signature dim {dim} does not match gallery dim {other.dim}")
            return

    async def _persist(self) -> None:
        if self.store is None:
            return
        # 写入串行化，且拿到锁后才取快照：后写入的一定是最新状态
        async with self._persist_lock:
            try:
                await self.store.save(self.entries())
            except PersistenceError as e:
                logger.error(f"图库保存失败（内存状态保留）: {e}")

    async def add_or_update(self, label: str, signature) -> bool:
        """Bind `signature` to `label`. Returns True if an existing label was updated."""
        name = normalize_label(label)
        try:
            sig = as_signature(signature)
        except ValueError as e:
            raise InvalidInput(str(e)) from e
        self._check_dim(name, int(sig.shape[0]))

        existing = self._entries.get(name)
        keep = max(1, int(self.config.max_signatures_per_label))
        if existing is not None and keep > 1:
            sigs = (existing.signatures + (sig,))[-keep:]
        else:
            sigs = (sig,)
        self._entries[name] = LabeledFace(label=name, signatures=sigs)
        self._rebuild_matcher()

        if existing is not None:
            logger.info(f"更新人脸: {name}")
        else:
            logger.info(f"新增人脸: {name}")
        await self._persist()
        return existing is not None

    async def remove(self, label: str) -> bool:
        """Delete `label` if present; absent labels are a no-op."""
        if label not in self._entries:
            return False
        del self._entries[label]
        self._rebuild_matcher()
        logger.info(f"删除人脸: {label}")
        await self._persist()
        return True

    def hydrate(self, entries: Sequence[LabeledFace]) -> None:
        """Replace the whole state (startup load). Builds the matcher once."""
        staged: Dict[str, LabeledFace] = {}
        dim = 0
        for entry in entries:
            if dim == 0:
                dim = entry.dim
            if entry.dim != dim:
                logger.warning(f"跳过维度不一致的条目 '{entry.label}': {entry.dim} != {dim}")
                continue
            # 重复 label：保留首次出现的位置，内容以最后一次为准
            staged[entry.label] = entry
        self._entries = staged
        self._rebuild_matcher()

    async def load(self) -> int:
        """Hydrate from the store. Returns the number of labels loaded."""
        if self.store is None:
            self.hydrate([])
            return 0
        try:
            entries = await self.store.load()
        except PersistenceError as e:
            logger.error(f"图库读取失败，使用空图库: {e}")
            entries = []
        self.hydrate(entries)
        logger.info(f"已加载图库: {len(self)} 个人")
        return len(self)
