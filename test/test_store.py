"""Tests for registering, resolving, superseding and removing artifacts."""

import json
import os

import numpy as np
import pytest

from headfactory.artifact import ArtifactKind as K
from headfactory.artifact import ArtifactRef
from headfactory.caching import PayloadReleased
from headfactory.store import (
    ArtifactStore,
    DuplicateArtifact,
    DuplicateSubject,
    NotFound,
    PendingArtifact,
)


def test_get_returns_what_was_put(store):
    """An artifact should resolve with the kind, name and parameters it was registered with."""
    ref = store.put("S1", K.RAW_VOLUME, "T1", {"modality": "T1"}, payload=[1, 2, 3])
    artifact = store.get(ref)

    assert artifact.kind == K.RAW_VOLUME
    assert artifact.name == "T1"
    assert dict(artifact.parameters) == {"modality": "T1"}
    assert artifact.version == 1
    assert store.load(ref) == [1, 2, 3]


def test_duplicate_put_raises_and_leaves_store_unchanged(store):
    """Registering the same name twice without overwrite should fail without touching
    the existing entry."""
    ref = store.put("S1", K.RAW_VOLUME, "T1", {"modality": "T1"}, payload=1)

    with pytest.raises(DuplicateArtifact):
        store.put("S1", K.RAW_VOLUME, "T1", {"modality": "T2"}, payload=2)

    assert len(store) == 1
    assert store.find("S1", K.RAW_VOLUME, "T1") == ref
    assert store.load(ref) == 1


def test_same_name_different_kind_is_not_duplicate(store):
    store.put("S1", K.VOLUME_MESH, "fem_5")
    store.put("S1", K.CONDUCTIVITY_TENSOR_FIELD, "fem_5")
    assert len(store) == 2


def test_overwrite_supersedes_previous_version(store):
    """Overwriting should produce a new version, and the old reference should no longer
    resolve rather than silently returning the newer one."""
    old = store.put("S1", K.VOLUME_MESH, "fem_5", payload="with tensors")
    new = store.put("S1", K.VOLUME_MESH, "fem_5", payload="cleared", overwrite=True, note="cleared")

    assert new.version == 2
    assert store.find("S1", K.VOLUME_MESH, "fem_5") == new
    assert store.get(new).note == "cleared"
    assert store.load(new) == "cleared"
    with pytest.raises(NotFound):
        store.get(old)
    assert old not in store


def test_version_numbers_keep_increasing_after_remove(store):
    """A removed and re-registered name shouldn't reuse a version, otherwise a stale
    reference could resolve to a different artifact."""
    first = store.put("S1", K.RECORDING, "raw")
    store.remove(first)
    second = store.put("S1", K.RECORDING, "raw")

    assert second.version == 2
    with pytest.raises(NotFound):
        store.get(first)


def test_latest_returns_most_recently_registered(store):
    store.put("S1", K.VOLUME_MESH, "fem_12")
    fem_5 = store.put("S1", K.VOLUME_MESH, "fem_5")
    assert store.latest("S1", K.VOLUME_MESH) == fem_5

    # superseding moves an entry to the end
    fem_12 = store.put("S1", K.VOLUME_MESH, "fem_12", overwrite=True)
    assert store.latest("S1", K.VOLUME_MESH) == fem_12


def test_latest_with_nothing_registered_raises(store):
    with pytest.raises(NotFound):
        store.latest("S1", K.HEAD_MODEL)


def test_list_filters_by_subject_and_kind(store):
    store.add_subject("S2")
    a = store.put("S1", K.RAW_VOLUME, "T1")
    b = store.put("S2", K.RAW_VOLUME, "T1")
    c = store.put("S1", K.RECORDING, "raw")

    assert store.list() == [a, b, c]
    assert store.list(subject="S1") == [a, c]
    assert store.list(kind=K.RAW_VOLUME) == [a, b]
    assert store.list("S2", K.RECORDING) == []


def test_put_many_is_atomic(store):
    """If any artifact of a batch can't be registered, none of them should be."""
    store.put("S1", K.VOLUME_MESH, "fem_5")
    pending = [
        PendingArtifact("S1", K.CONDUCTIVITY_TENSOR_FIELD, "fem_5_tensors"),
        PendingArtifact("S1", K.VOLUME_MESH, "fem_5"),
    ]

    with pytest.raises(DuplicateArtifact):
        store.put_many(pending)

    assert len(store) == 1
    with pytest.raises(NotFound):
        store.find("S1", K.CONDUCTIVITY_TENSOR_FIELD, "fem_5_tensors")


def test_put_many_rejects_same_name_twice_in_one_batch(store):
    pending = [
        PendingArtifact("S1", K.RECORDING, "raw"),
        PendingArtifact("S1", K.RECORDING, "raw", overwrite=True),
    ]
    with pytest.raises(DuplicateArtifact):
        store.put_many(pending)
    assert len(store) == 0


def test_put_for_unknown_subject_raises(store):
    with pytest.raises(NotFound):
        store.put("Subject02", K.RAW_VOLUME, "T1")


def test_duplicate_subject_raises(store):
    with pytest.raises(DuplicateSubject):
        store.add_subject("S1")


def test_reference_from_another_workspace_does_not_resolve(store):
    store.put("S1", K.RAW_VOLUME, "T1")
    foreign = ArtifactRef("other", "S1", K.RAW_VOLUME, "T1", 1)
    with pytest.raises(NotFound):
        store.get(foreign)


def test_payloads_are_read_only(store):
    """Consumers share a payload, so editing it in place must not be possible."""
    data = np.zeros(4)
    ref = store.put("S1", K.RAW_VOLUME, "T1", payload={"data": data})

    payload = store.load(ref)
    with pytest.raises(ValueError):
        payload["data"][0] = 1

    # the store made its own copy
    data[0] = 5
    assert store.load(ref)["data"][0] == 0


def test_parameters_are_read_only(store):
    parameters = {"conductivities": [0.14, 0.33]}
    ref = store.put("S1", K.CONDUCTIVITY_TENSOR_FIELD, "tensors", parameters)

    with pytest.raises(TypeError):
        store.get(ref).parameters["conductivities"] = []

    parameters["conductivities"].append(1.79)
    assert store.get(ref).parameters["conductivities"] == [0.14, 0.33]


def test_remove_keeps_produced_by_of_other_artifacts(store):
    """Removing an intermediate shouldn't affect anything that points at its producer."""
    raw = store.put("S1", K.RECORDING, "raw", produced_by="inv0001")
    band = store.put("S1", K.FILTERED_RECORDING, "band", produced_by="inv0002")

    store.remove(raw)

    assert raw not in store
    assert store.get(band).produced_by == "inv0002"
    with pytest.raises(NotFound):
        store.remove(raw)


def test_close_releases_everything(store):
    ref = store.put("S1", K.RAW_VOLUME, "T1", payload=1)
    handle = store.get(ref).payload_handle

    store.close()

    with pytest.raises(NotFound):
        store.get(ref)
    with pytest.raises(PayloadReleased):
        handle.load()


def test_persistent_payloads_are_written_and_released(persistent_store):
    """A persistent store writes each payload out when registered and deletes the file
    once the artifact is superseded."""
    old = persistent_store.put("S1", K.VOLUME_MESH, "fem_5", payload={"tensors": np.eye(3)})
    old_path = persistent_store.get(old).payload_handle.describe()
    assert os.path.exists(old_path)
    assert np.array_equal(persistent_store.load(old)["tensors"], np.eye(3))

    new = persistent_store.put("S1", K.VOLUME_MESH, "fem_5", payload={"tensors": None}, overwrite=True)

    assert not os.path.exists(old_path)
    assert os.path.exists(persistent_store.get(new).payload_handle.describe())
    assert persistent_store.load(new)["tensors"] is None


def test_save_writes_registry_metadata(persistent_store, tmp_path):
    persistent_store.put("S1", K.RAW_VOLUME, "T1", {"modality": "T1"}, produced_by="inv0001")
    path = str(tmp_path / "registry.json")

    persistent_store.save(path)

    with open(path) as infile:
        registry = json.load(infile)
    assert registry["workspace"] == "test"
    assert registry["subjects"][0]["name"] == "S1"
    assert registry["artifacts"][0]["kind"] == "RawVolume"
    assert registry["artifacts"][0]["parameters"] == {"modality": "T1"}
    assert registry["artifacts"][0]["produced_by"] == "inv0001"


def test_dry_store_keeps_payloads_in_memory():
    store = ArtifactStore("dry")
    store.add_subject("S1")
    ref = store.put("S1", K.RAW_VOLUME, "T1", payload=1)
    assert store.get(ref).payload_handle.describe() == "memory"


def test_reference_from_an_earlier_store_with_the_same_name_does_not_resolve(store):
    """A workspace that is recreated under the same name starts a new store, and the
    references of the old one must not resolve against the new artifacts."""
    old_ref = store.put("S1", K.RAW_VOLUME, "T1", payload=[1, 2, 3])
    store.close()
    new = ArtifactStore("test")
    new.add_subject("S1")
    new_ref = new.put("S1", K.RAW_VOLUME, "T1", payload=[4, 5, 6])

    assert old_ref.version == new_ref.version
    assert old_ref != new_ref
    assert old_ref not in new
    with pytest.raises(NotFound):
        new.get(old_ref)
    with pytest.raises(NotFound):
        new.load(old_ref)
    with pytest.raises(NotFound):
        new.remove(old_ref)
    assert new.load(new_ref) == [4, 5, 6]


def test_failed_payload_write_gives_back_versions(store, mocker):
    make_handle = store._make_handle

    def failing_handle(ref, payload):
        if ref.kind == K.CONDUCTIVITY_TENSOR_FIELD:
            raise OSError("No space left on device")
        return make_handle(ref, payload)

    mocker.patch.object(store, "_make_handle", side_effect=failing_handle)
    pending = [
        PendingArtifact("S1", K.VOLUME_MESH, "fem_5"),
        PendingArtifact("S1", K.CONDUCTIVITY_TENSOR_FIELD, "fem_5_tensors"),
    ]

    with pytest.raises(OSError):
        store.put_many(pending)

    assert len(store) == 0
    assert store.put("S1", K.VOLUME_MESH, "fem_5").version == 1


def test_failed_commit_gives_back_versions(store, mocker):
    """A registration that loses a race at commit time shouldn't leave a gap in the
    version numbers."""
    store.put("S1", K.VOLUME_MESH, "fem_5")
    mocker.patch.object(
        store,
        "_validate_pending",
        side_effect=[[2], DuplicateArtifact("registered in the meantime")],
    )

    with pytest.raises(DuplicateArtifact):
        store.put("S1", K.VOLUME_MESH, "fem_5", overwrite=True)

    mocker.stopall()
    assert store.find("S1", K.VOLUME_MESH, "fem_5").version == 1
    assert store.put("S1", K.VOLUME_MESH, "fem_5", overwrite=True).version == 2
