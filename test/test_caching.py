import os

import numpy as np
import pytest

from headfactory.caching import (
    Cacheable,
    CachedPayload,
    JsonCacher,
    MemoryPayload,
    PayloadReleased,
    PickleCacher,
)


def test_cacher_adds_extension(tmp_path):
    path = str(tmp_path / "Subject01" / "VolumeMesh" / "fem_5@2")
    assert PickleCacher(path).get_path() == path + ".pkl"
    assert JsonCacher(path + ".json").get_path() == path + ".json"


def test_cacher_without_path():
    with pytest.raises(ValueError):
        PickleCacher().get_path()


def test_base_cacher_is_abstract(tmp_path):
    cacher = Cacheable(str(tmp_path / "thing"))
    with pytest.raises(NotImplementedError):
        cacher.save({})
    with pytest.raises(NotImplementedError):
        cacher.load()


def test_pickle_cacher_round_trip_creates_folders(tmp_path):
    cacher = PickleCacher(str(tmp_path / "nested" / "tensors"))
    tensors = np.eye(3)

    cacher.save({"tensors": tensors})

    assert cacher.check()
    assert np.array_equal(cacher.load()["tensors"], tensors)
    cacher.remove()
    assert not cacher.check()
    # removing again is fine
    cacher.remove()


def test_cached_payload_is_frozen(tmp_path):
    """Every load reads the payload back from disk, and nothing a collaborator does to
    it can change what's stored."""
    handle = CachedPayload({"data": np.zeros(4)}, PickleCacher(str(tmp_path / "raw")))

    payload = handle.load()
    with pytest.raises(ValueError):
        payload["data"][0] = 1.0

    assert handle.describe() == str(tmp_path / "raw") + ".pkl"
    assert handle.load() is not payload


def test_cached_payload_release_removes_file(tmp_path):
    handle = CachedPayload([1, 2, 3], JsonCacher(str(tmp_path / "events")))
    assert os.path.exists(handle.describe())

    handle.release()

    assert not os.path.exists(handle.describe())
    with pytest.raises(PayloadReleased):
        handle.load()


def test_memory_payload():
    source = np.arange(3.0)
    handle = MemoryPayload(source)
    source[0] = 10.0

    assert handle.load()[0] == 0.0
    assert handle.describe() == "memory"
    handle.release()
    with pytest.raises(PayloadReleased):
        handle.load()
