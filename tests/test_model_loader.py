"""
ModelCache: load once, share the instance, recover from failed loads.
"""

from __future__ import annotations

import json
from threading import Barrier, Thread
import time

import pytest
import torch

from cancer_service.artifacts import ArtifactLocation, ArtifactStore
from cancer_service.config import InferenceConfig, Settings
from cancer_service.errors import ModelLoadFailed, PartialArtifact
from cancer_service.model_loader import ModelCache, ModelState, build_model_cache, load_sharded_model
from cancer_service.storage import LocalStaging

from conftest import BUCKET, shard_keys, topology_key


class CountingLoader:
    def __init__(self, delay: float = 0.0):
        self.calls = 0
        self.delay = delay

    def __call__(self, paths, device):
        self.calls += 1
        time.sleep(self.delay)
        return load_sharded_model(paths, device)


def test_get_loads_a_working_model(model_cache):
    assert model_cache.state is ModelState.UNLOADED
    model = model_cache.get()
    assert model_cache.state is ModelState.READY

    out = model(torch.ones(1, 4, 4, 3))
    assert out.shape == (1, 1)
    assert float(out[0, 0]) == pytest.approx(1.0)


def test_second_get_does_no_work(artifact_store, location, blob_store):
    loader = CountingLoader()
    cache = ModelCache(artifact_store, location, loader=loader, device=torch.device("cpu"))

    first = cache.get()
    downloads = len(blob_store.downloads)
    second = cache.get()

    assert first is second
    assert loader.calls == 1
    assert len(blob_store.downloads) == downloads


def test_concurrent_first_calls_share_one_load(artifact_store, location, blob_store):
    loader = CountingLoader(delay=0.2)
    cache = ModelCache(artifact_store, location, loader=loader, device=torch.device("cpu"))
    workers = 8
    barrier = Barrier(workers)
    results = []
    errors = []

    def call():
        barrier.wait()
        try:
            results.append(cache.get())
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)

    threads = [Thread(target=call) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert not errors
    assert len(results) == workers
    assert all(m is results[0] for m in results)
    assert loader.calls == 1
    assert blob_store.count(topology_key(location)) == 1
    for key in shard_keys(blob_store):
        assert blob_store.count(key) == 1


def test_failed_fetch_wraps_and_allows_retry(artifact_store, location, blob_store):
    key = shard_keys(blob_store)[0]
    data = blob_store.objects.pop((BUCKET, key))
    cache = ModelCache(artifact_store, location, device=torch.device("cpu"))

    with pytest.raises(ModelLoadFailed) as excinfo:
        cache.get()
    assert isinstance(excinfo.value.__cause__, PartialArtifact)
    assert cache.state is ModelState.FAILED

    blob_store.put(BUCKET, key, data)
    assert cache.get() is not None
    assert cache.state is ModelState.READY


def test_deserialization_failure_is_wrapped(artifact_store, location):
    def broken(paths, device):
        raise RuntimeError("bad archive")

    cache = ModelCache(artifact_store, location, loader=broken, device=torch.device("cpu"))
    with pytest.raises(ModelLoadFailed) as excinfo:
        cache.get()
    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert cache.state is ModelState.FAILED


def test_digest_mismatch_fails_load(artifact_store, location, blob_store):
    key = topology_key(location)
    descriptor = json.loads(blob_store.objects[(BUCKET, key)])
    descriptor["sha256"] = "0" * 64
    blob_store.put(BUCKET, key, json.dumps(descriptor).encode())

    cache = ModelCache(artifact_store, location, device=torch.device("cpu"))
    with pytest.raises(ModelLoadFailed):
        cache.get()


def test_unsupported_format_fails_load(artifact_store, location, blob_store):
    key = topology_key(location)
    descriptor = json.loads(blob_store.objects[(BUCKET, key)])
    descriptor["format"] = "graph-model"
    blob_store.put(BUCKET, key, json.dumps(descriptor).encode())

    cache = ModelCache(artifact_store, location, device=torch.device("cpu"))
    with pytest.raises(ModelLoadFailed, match="Unsupported model format"):
        cache.get()


def test_cleanup_policy_removes_staged_files(blob_store, location, tmp_path):
    staging = LocalStaging(tmp_path / "stage", cleanup_after_load=True)
    cache = ModelCache(ArtifactStore(blob_store, staging), location, device=torch.device("cpu"))
    cache.get()
    assert not staging.root.exists()
    assert cache.state is ModelState.READY


def test_waiters_share_a_failed_load(artifact_store, location, blob_store):
    del blob_store.objects[(BUCKET, topology_key(location))]
    blob_store.delay = 0.2
    cache = ModelCache(artifact_store, location, device=torch.device("cpu"))
    workers = 6
    barrier = Barrier(workers)
    errors = []

    def call():
        barrier.wait()
        try:
            cache.get()
        except ModelLoadFailed as exc:
            errors.append(exc)

    threads = [Thread(target=call) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(errors) == workers
    assert blob_store.count(topology_key(location)) == 1
    assert cache.state is ModelState.FAILED

    # A call made after the failure starts a new attempt.
    with pytest.raises(ModelLoadFailed):
        cache.get()
    assert blob_store.count(topology_key(location)) == 2


def test_artifact_location_parse():
    location = ArtifactLocation.parse("buckets-ml/models/v1", shard_prefix="group2-shard")
    assert location.bucket == "buckets-ml"
    assert location.topology_key == "models/v1/model.json"
    assert location.shard_key_prefix == "models/v1/group2-shard"
    assert ArtifactLocation.parse("bucket").topology_key == "model.json"
    with pytest.raises(ValueError):
        ArtifactLocation.parse("/")


def test_build_model_cache_uses_inference_config_location(tmp_path):
    settings = Settings(staging_dir=tmp_path, artifact_topology_file="topology.json")
    cache = build_model_cache(settings, InferenceConfig(artifact_location="other-bucket/weights"))
    assert cache.location == ArtifactLocation(
        bucket="other-bucket", prefix="weights", topology_file="topology.json"
    )
    assert cache.state is ModelState.UNLOADED
