"""
Pytest configuration and shared fixtures for cancer_service tests.
"""

from __future__ import annotations

from io import BytesIO
from pathlib import Path
from threading import Lock
import time
from typing import Dict, List, Optional, Set, Tuple

import pytest
import torch
from PIL import Image

from cancer_service.artifacts import ArtifactLocation, ArtifactStore, export_artifact
from cancer_service.errors import BlobNotFound, TransientStoreError
from cancer_service.model_loader import ModelCache
from cancer_service.storage import LocalStaging, ObjectInfo

BUCKET = "buckets-ml"
PREFIX = "data"


class MeanScore(torch.nn.Module):
    """Scores an NHWC batch with its mean channel value."""

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return x.mean(dim=[1, 2, 3]).unsqueeze(1)


class FakeBlobStore:
    """In-memory blob store that records every call."""

    def __init__(self):
        self.objects: Dict[Tuple[str, str], bytes] = {}
        self.downloads: List[str] = []
        self.transient_keys: Set[str] = set()
        self.vanished_keys: Set[str] = set()
        self.reverse_listing = True
        self.delay = 0.0
        self._lock = Lock()

    def put(self, bucket: str, key: str, data: bytes) -> None:
        self.objects[(bucket, key)] = data

    def download(self, bucket: str, key: str) -> bytes:
        with self._lock:
            self.downloads.append(key)
        if self.delay:
            time.sleep(self.delay)
        if key in self.transient_keys:
            raise TransientStoreError(f"timeout reading {key}")
        if key in self.vanished_keys or (bucket, key) not in self.objects:
            raise BlobNotFound(key)
        return self.objects[(bucket, key)]

    def list_objects(self, bucket: str, prefix: str) -> List[ObjectInfo]:
        keys = sorted(k for b, k in self.objects if b == bucket and k.startswith(prefix))
        if self.reverse_listing:
            keys.reverse()
        return [ObjectInfo(key=k, size=len(self.objects[(bucket, k)])) for k in keys]

    def upload(self, bucket: str, key: str, data: bytes, content_type: str) -> None:
        self.put(bucket, key, data)

    def count(self, key: str) -> int:
        return self.downloads.count(key)


def image_bytes(size=(64, 48), color=(0, 0, 0), mode="RGB", fmt="PNG") -> bytes:
    buf = BytesIO()
    Image.new(mode, size, color).save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture(scope="session")
def model_payload() -> bytes:
    buf = BytesIO()
    torch.jit.save(torch.jit.script(MeanScore()), buf)
    return buf.getvalue()


@pytest.fixture
def exported_dir(tmp_path: Path, model_payload: bytes) -> Path:
    out = tmp_path / "export"
    export_artifact(model_payload, out, shard_size=256)
    return out


@pytest.fixture
def blob_store(exported_dir: Path) -> FakeBlobStore:
    store = FakeBlobStore()
    for path in exported_dir.iterdir():
        store.put(BUCKET, f"{PREFIX}/{path.name}", path.read_bytes())
    return store


@pytest.fixture
def location() -> ArtifactLocation:
    return ArtifactLocation(bucket=BUCKET, prefix=PREFIX)


@pytest.fixture
def staging(tmp_path: Path) -> LocalStaging:
    return LocalStaging(tmp_path / "staging" / "nested")


@pytest.fixture
def artifact_store(blob_store: FakeBlobStore, staging: LocalStaging) -> ArtifactStore:
    return ArtifactStore(blob_store, staging)


@pytest.fixture
def model_cache(artifact_store: ArtifactStore, location: ArtifactLocation) -> ModelCache:
    return ModelCache(artifact_store, location, device=torch.device("cpu"))


def shard_keys(store: FakeBlobStore) -> List[str]:
    return sorted(k for _, k in store.objects if "-shard" in k)


def topology_key(location: Optional[ArtifactLocation] = None) -> str:
    return (location or ArtifactLocation(bucket=BUCKET, prefix=PREFIX)).topology_key
