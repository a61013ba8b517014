from __future__ import annotations

import asyncio
import json
import random

import numpy as np
import pytest

from conftest import FailingKeyValueStore, make_signature
from facecam.errors import InvalidInput
from facecam.face.gallery import FaceGallery, GalleryConfig, LabeledFace
from facecam.face.store import MemoryKeyValueStore, SignatureStore
from facecam.utils.serializer import deserialize_gallery, serialize_gallery


@pytest.mark.asyncio
async def test_list_tracks_adds_and_removes_in_insertion_order(gallery: FaceGallery):
    await gallery.add_or_update("alice", make_signature(0))
    await gallery.add_or_update("bob", make_signature(1))
    await gallery.add_or_update("carol", make_signature(2))
    await gallery.remove("bob")
    await gallery.add_or_update("alice", make_signature(3))

    assert gallery.list() == ["alice", "carol"]


@pytest.mark.asyncio
async def test_random_operation_sequences_match_a_reference_model(kv):
    rng = random.Random(7)
    labels = ["alice", "bob", "carol", "dave"]
    for _ in range(20):
        gallery = FaceGallery(SignatureStore(kv))
        expected = {}
        for step in range(30):
            label = rng.choice(labels)
            if rng.random() < 0.6:
                await gallery.add_or_update(label, make_signature(step))
                expected.setdefault(label, None)
            else:
                await gallery.remove(label)
                expected.pop(label, None)
        assert gallery.list() == list(expected)


@pytest.mark.asyncio
async def test_recapture_overwrites_signature(gallery: FaceGallery):
    s1, s2 = make_signature(0), make_signature(5)

    assert await gallery.add_or_update("alice", s1) is False
    assert await gallery.add_or_update("alice", s2) is True

    entry = gallery.get("alice")
    assert gallery.list() == ["alice"]
    assert len(entry.signatures) == 1
    np.testing.assert_array_equal(entry.signatures[0], s2)


@pytest.mark.asyncio
async def test_label_is_trimmed_and_case_sensitive(gallery: FaceGallery):
    await gallery.add_or_update("  Alice ", make_signature(0))
    await gallery.add_or_update("alice", make_signature(1))

    assert gallery.list() == ["Alice", "alice"]


@pytest.mark.asyncio
@pytest.mark.parametrize("label", ["", "   ", None])
async def test_empty_label_is_invalid(gallery: FaceGallery, kv, label):
    with pytest.raises(InvalidInput):
        await gallery.add_or_update(label, make_signature(0))
    assert gallery.list() == []
    assert kv.get("faces") is None


@pytest.mark.asyncio
async def test_signature_dimension_must_match_gallery(gallery: FaceGallery):
    await gallery.add_or_update("alice", make_signature(0))

    with pytest.raises(InvalidInput):
        await gallery.add_or_update("bob", np.ones(3))
    # 同一 label 重新采集可以改变维度（唯一条目）
    await gallery.add_or_update("alice", np.ones(3))
    assert gallery.matcher().dim == 3


@pytest.mark.asyncio
async def test_matcher_is_none_when_empty_and_rebuilt_on_change(gallery: FaceGallery):
    assert gallery.matcher() is None

    await gallery.add_or_update("alice", make_signature(0))
    first = gallery.matcher()
    assert first is not None
    assert first.find_best_match(make_signature(0)).label == "alice"

    await gallery.add_or_update("bob", make_signature(2))
    second = gallery.matcher()
    assert second is not first
    assert first.labels == ["alice"]
    assert second.labels == ["alice", "bob"]

    await gallery.remove("alice")
    await gallery.remove("bob")
    assert gallery.matcher() is None


@pytest.mark.asyncio
async def test_remove_absent_label_is_noop_without_write(gallery: FaceGallery, kv):
    await gallery.add_or_update("alice", make_signature(0))
    before = kv.get("faces")

    assert await gallery.remove("nobody") is False
    assert kv.get("faces") == before
    assert gallery.list() == ["alice"]


@pytest.mark.asyncio
async def test_every_mutation_is_persisted(gallery: FaceGallery, kv):
    await gallery.add_or_update("alice", make_signature(0))
    await gallery.add_or_update("bob", make_signature(1))
    assert [r["label"] for r in json.loads(kv.get("faces"))] == ["alice", "bob"]

    await gallery.remove("alice")
    assert [r["label"] for r in json.loads(kv.get("faces"))] == ["bob"]


@pytest.mark.asyncio
async def test_write_failure_keeps_in_memory_state():
    backend = FailingKeyValueStore()
    gallery = FaceGallery(SignatureStore(backend))

    await gallery.add_or_update("alice", make_signature(0))

    assert backend.writes == 1
    assert gallery.list() == ["alice"]
    assert gallery.matcher().find_best_match(make_signature(0)).label == "alice"


@pytest.mark.asyncio
async def test_list_is_a_snapshot(gallery: FaceGallery):
    await gallery.add_or_update("alice", make_signature(0))

    labels = gallery.list()
    labels.append("mallory")

    assert gallery.list() == ["alice"]


def test_hydrate_replaces_state_and_builds_matcher_once(monkeypatch: pytest.MonkeyPatch):
    gallery = FaceGallery()
    builds = []
    original = gallery._rebuild_matcher

    def counting():
        builds.append(1)
        original()

    monkeypatch.setattr(gallery, "_rebuild_matcher", counting)
    gallery.hydrate(
        [
            LabeledFace.create("alice", [make_signature(0)]),
            LabeledFace.create("bob", [make_signature(1)]),
            LabeledFace.create("carol", [make_signature(2)]),
        ]
    )

    assert len(builds) == 1
    assert gallery.list() == ["alice", "bob", "carol"]
    assert gallery.matcher().labels == ["alice", "bob", "carol"]


def test_hydrate_duplicate_label_keeps_first_position_last_value():
    gallery = FaceGallery()
    gallery.hydrate(
        [
            LabeledFace.create("alice", [make_signature(0)]),
            LabeledFace.create("bob", [make_signature(1)]),
            LabeledFace.create("alice", [make_signature(4)]),
        ]
    )

    assert gallery.list() == ["alice", "bob"]
    np.testing.assert_array_equal(gallery.get("alice").signatures[0], make_signature(4))


def test_serialize_after_hydrate_round_trips():
    payload = json.dumps(
        [
            {"label": "alice", "descriptors": [[0.1, -0.25, 1e-7, 3.0]]},
            {"label": "bob", "descriptors": [[0.5, 0.5, 0.5, 0.5], [0.123456789012345, 0.0, -1.5, 2.0]]},
        ]
    )
    gallery = FaceGallery()
    gallery.hydrate(deserialize_gallery(payload))

    assert json.loads(serialize_gallery(gallery.entries())) == json.loads(payload)


@pytest.mark.asyncio
async def test_load_hydrates_from_store():
    kv = MemoryKeyValueStore({"faces": json.dumps([{"label": "alice", "descriptors": [[1.0, 0.0]]}])})
    gallery = FaceGallery(SignatureStore(kv))

    assert await gallery.load() == 1
    assert gallery.matcher().find_best_match(np.array([1.0, 0.0])).label == "alice"


@pytest.mark.asyncio
async def test_load_with_corrupt_store_starts_empty():
    gallery = FaceGallery(SignatureStore(MemoryKeyValueStore({"faces": "{not json"})))

    assert await gallery.load() == 0
    assert gallery.matcher() is None


@pytest.mark.asyncio
async def test_multiple_signatures_per_label_when_configured(kv):
    gallery = FaceGallery(SignatureStore(kv), config=GalleryConfig(max_signatures_per_label=2))

    for seed in (0, 1, 2):
        await gallery.add_or_update("alice", make_signature(seed))

    sigs = gallery.get("alice").signatures
    assert len(sigs) == 2
    np.testing.assert_array_equal(sigs[-1], make_signature(2))


class SlowFirstWriteStore(MemoryKeyValueStore):
    """Async backend whose first write lands after the later ones would."""

    def __init__(self):
        super().__init__()
        self.writes = []

    async def set(self, key, value):
        first = not self.writes
        self.writes.append(value)
        if first:
            await asyncio.sleep(0.2)
        self.data[key] = value


@pytest.mark.asyncio
async def test_overlapping_mutations_persist_latest_state():
    backend = SlowFirstWriteStore()
    gallery = FaceGallery(SignatureStore(backend))

    await asyncio.gather(gallery.add_or_update("alice", make_signature(0)), gallery.remove("alice"))

    assert gallery.list() == []
    assert [e.label for e in deserialize_gallery(backend.data["faces"])] == []
    reloaded = FaceGallery(SignatureStore(backend))
    assert await reloaded.load() == 0
