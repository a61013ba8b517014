from __future__ import annotations

import json
from pathlib import Path

import numpy as np
import pytest

from conftest import FailingKeyValueStore, make_signature
from facecam.errors import PersistenceError
from facecam.face.detection import BoundingBox
from facecam.face.gallery import LabeledFace
from facecam.face.store import JsonFileKeyValueStore, MemoryKeyValueStore, SignatureStore
from facecam.utils.serializer import deserialize_gallery, serialize_detection, serialize_gallery
from facecam.video.session import DetectionResult


class AsyncKeyValueStore:
    def __init__(self):
        self.data = {}

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value):
        self.data[key] = value


def test_serialized_format_is_plain_json_arrays():
    body = serialize_gallery([LabeledFace.create("alice", [np.array([0.5, -1.0, 2.0], dtype=np.float32)])])

    assert json.loads(body) == [{"label": "alice", "descriptors": [[0.5, -1.0, 2.0]]}]


def test_float32_engine_output_survives_round_trip():
    raw = np.random.default_rng(0).standard_normal(128).astype(np.float32)
    entry = LabeledFace.create("alice", [raw])

    back = deserialize_gallery(serialize_gallery([entry]))

    np.testing.assert_array_equal(back[0].signatures[0].astype(np.float32), raw)


def test_non_ascii_labels_are_kept():
    back = deserialize_gallery(serialize_gallery([LabeledFace.create("张泽宇", [make_signature(0)])]))

    assert back[0].label == "张泽宇"


@pytest.mark.parametrize("payload", [None, ""])
def test_absent_payload_is_empty_gallery(payload):
    assert deserialize_gallery(payload) == []


@pytest.mark.parametrize("payload", ["{not json", '{"label": "alice"}', "42"])
def test_payload_that_is_not_an_array_raises(payload):
    with pytest.raises(PersistenceError):
        deserialize_gallery(payload)


def test_malformed_records_are_skipped_with_warning():
    payload = json.dumps(
        [
            {"label": "alice", "descriptors": [[1.0, 0.0]]},
            {"label": "", "descriptors": [[1.0, 0.0]]},
            {"label": "bob"},
            {"label": "carol", "descriptors": []},
            {"label": "dave", "descriptors": [["x", 1]]},
            {"label": "erin", "descriptors": [[0.0, 1.0]]},
        ]
    )

    with pytest.warns(RuntimeWarning):
        entries = deserialize_gallery(payload)

    assert [e.label for e in entries] == ["alice", "erin"]


@pytest.mark.asyncio
async def test_signature_store_round_trip_with_sync_backend():
    store = SignatureStore(MemoryKeyValueStore())
    entries = [LabeledFace.create("alice", [make_signature(0)]), LabeledFace.create("bob", [make_signature(1)])]

    await store.save(entries)
    loaded = await store.load()

    assert [e.label for e in loaded] == ["alice", "bob"]
    np.testing.assert_array_equal(loaded[1].signatures[0], make_signature(1))


@pytest.mark.asyncio
async def test_signature_store_supports_async_backend():
    backend = AsyncKeyValueStore()
    store = SignatureStore(backend, key="gallery")

    await store.save([LabeledFace.create("alice", [make_signature(0)])])

    assert "gallery" in backend.data
    assert [e.label for e in await store.load()] == ["alice"]


@pytest.mark.asyncio
async def test_backend_write_failure_becomes_persistence_error():
    store = SignatureStore(FailingKeyValueStore())

    with pytest.raises(PersistenceError):
        await store.save([LabeledFace.create("alice", [make_signature(0)])])


@pytest.mark.asyncio
async def test_json_file_store_persists_across_instances(tmp_path: Path):
    path = tmp_path / "data" / "faces.json"
    await SignatureStore(JsonFileKeyValueStore(path)).save([LabeledFace.create("alice", [make_signature(0)])])

    loaded = await SignatureStore(JsonFileKeyValueStore(path)).load()

    assert path.exists()
    assert [e.label for e in loaded] == ["alice"]


def test_json_file_store_keeps_other_keys(tmp_path: Path):
    kv = JsonFileKeyValueStore(tmp_path / "kv.json")
    kv.set("faces", "[]")
    kv.set("other", "x")

    assert kv.get("faces") == "[]"
    assert kv.get("other") == "x"
    assert kv.get("missing") is None


def test_serialize_detection_adds_normalized_box():
    det = DetectionResult(box=BoundingBox(16.0, 12.0, 32.0, 24.0), label="alice", distance=0.25, is_known=True)

    ed = serialize_detection(det, frame_shape=(120, 160))

    assert ed["bbox"] == [16, 12, 32, 24]
    assert ed["label"] == "alice"
    assert ed["known"] is True
    assert ed["bbox_norm"] == [0.1, 0.1, 0.2, 0.2]
