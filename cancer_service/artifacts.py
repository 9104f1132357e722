"""
Model artifact retrieval.

An artifact is a JSON topology descriptor (`model.json`) plus weight shards
named `group<G>-shard<I>of<N>.bin`. The descriptor's `weightsManifest` lists
the shard paths in the order the payload is reassembled; the blob store's
listing order is never used for that.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
import hashlib
import json
import logging
from pathlib import Path
import re
from typing import Any, Dict, List, Optional, Tuple, Union

from .errors import ArtifactUnavailable, BlobNotFound, PartialArtifact
from .storage import BlobStore, LocalStaging

logger = logging.getLogger(__name__)

SHARD_NAME = re.compile(r"^group(?P<group>\d+)-shard(?P<index>\d+)of(?P<total>\d+)(?:\.bin)?$")
DEFAULT_SHARD_SIZE = 4 * 1024 * 1024  # 4MB, same as the tfjs converter


@dataclass(frozen=True)
class ShardId:
    group: int
    index: int
    total: int


def parse_shard_name(name: str) -> Optional[ShardId]:
    """Return the shard identity encoded in a file name, or None."""
    match = SHARD_NAME.match(Path(name).name)
    if not match:
        return None
    return ShardId(int(match["group"]), int(match["index"]), int(match["total"]))


@dataclass(frozen=True)
class ArtifactLocation:
    bucket: str
    prefix: str
    topology_file: str = "model.json"
    shard_prefix: str = "group1-shard"

    @classmethod
    def parse(cls, value: str, **kwargs: str) -> "ArtifactLocation":
        """Build a location from `bucket/prefix` (the prefix may be empty)."""
        bucket, _, prefix = value.strip("/").partition("/")
        if not bucket:
            raise ValueError(f"Artifact location {value!r} has no bucket")
        return cls(bucket=bucket, prefix=prefix, **kwargs)

    def _key(self, name: str) -> str:
        prefix = self.prefix.strip("/")
        return f"{prefix}/{name}" if prefix else name

    @property
    def topology_key(self) -> str:
        return self._key(self.topology_file)

    @property
    def shard_key_prefix(self) -> str:
        return self._key(self.shard_prefix)

    def __str__(self) -> str:
        return f"{self.bucket}/{self.prefix.strip('/')}"


@dataclass(frozen=True)
class LocalPaths:
    topology: Path
    shards: Tuple[Path, ...]
    descriptor: Dict[str, Any] = field(default_factory=dict, compare=False)


def declared_shards(descriptor: Dict[str, Any]) -> List[str]:
    """Shard file names in manifest order."""
    manifest = descriptor.get("weightsManifest")
    if not isinstance(manifest, list):
        raise ArtifactUnavailable("Topology descriptor has no weightsManifest")
    names: List[str] = []
    for group in manifest:
        paths = group.get("paths") if isinstance(group, dict) else None
        if not isinstance(paths, list):
            raise ArtifactUnavailable("weightsManifest entry without paths")
        names.extend(Path(str(p)).name for p in paths)
    if not names:
        raise ArtifactUnavailable("Topology descriptor declares no weight shards")
    return names


class ArtifactStore:
    """Stage a model artifact from the blob store into local storage."""

    def __init__(self, blob_store: BlobStore, staging: LocalStaging, max_workers: int = 4):
        self.blob_store = blob_store
        self.staging = staging
        self.max_workers = max_workers

    def _read_descriptor(self, location: ArtifactLocation) -> Tuple[Path, Dict[str, Any]]:
        try:
            raw = self.blob_store.download(location.bucket, location.topology_key)
        except BlobNotFound as exc:
            raise ArtifactUnavailable(f"Topology file {location.topology_key} not found") from exc
        try:
            descriptor = json.loads(raw)
        except ValueError as exc:
            raise ArtifactUnavailable(f"Topology file {location.topology_key} is not valid JSON") from exc
        if not isinstance(descriptor, dict):
            raise ArtifactUnavailable(f"Topology file {location.topology_key} is not a JSON object")
        return self.staging.write(location.topology_file, raw), descriptor

    def _download_shard(self, bucket: str, key: str) -> Tuple[str, Optional[Path]]:
        name = Path(key).name
        try:
            data = self.blob_store.download(bucket, key)
        except BlobNotFound:
            logger.warning("Shard %s disappeared before it could be downloaded", key)
            return name, None
        return name, self.staging.write(name, data)

    def fetch(self, location: ArtifactLocation) -> LocalPaths:
        self.staging.ensure()

        logger.info("Downloading %s from bucket %s", location.topology_key, location.bucket)
        topology_path, descriptor = self._read_descriptor(location)
        expected = declared_shards(descriptor)

        try:
            listing = self.blob_store.list_objects(location.bucket, location.shard_key_prefix)
        except BlobNotFound as exc:
            raise ArtifactUnavailable(f"Bucket {location.bucket} not found") from exc
        keys = [obj.key for obj in listing if parse_shard_name(obj.key) is not None]
        logger.info("Downloading %d shard files with prefix %s", len(keys), location.shard_key_prefix)

        staged: Dict[str, Path] = {}
        if keys:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                for name, path in pool.map(lambda k: self._download_shard(location.bucket, k), keys):
                    if path is not None:
                        staged[name] = path

        missing = [name for name in expected if name not in staged]
        if missing:
            raise PartialArtifact(missing)
        extra = sorted(set(staged) - set(expected))
        if extra:
            logger.warning("Ignoring shards not declared by the descriptor: %s", extra)

        return LocalPaths(
            topology=topology_path,
            shards=tuple(staged[name] for name in expected),
            descriptor=descriptor,
        )


def export_artifact(
    model: Union[bytes, Path],
    out_dir: Path,
    shard_size: int = DEFAULT_SHARD_SIZE,
    group: int = 1,
    topology_file: str = "model.json",
) -> Path:
    """
    Split a serialized TorchScript model into a descriptor plus shards.

    The resulting directory can be uploaded as-is under the artifact prefix.
    """
    if shard_size <= 0:
        raise ValueError("shard_size must be positive")
    payload = model if isinstance(model, bytes) else Path(model).read_bytes()
    if not payload:
        raise ValueError("Model payload is empty")

    chunks = [payload[i : i + shard_size] for i in range(0, len(payload), shard_size)]
    total = len(chunks)
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    names = []
    for index, chunk in enumerate(chunks, start=1):
        name = f"group{group}-shard{index}of{total}.bin"
        (out_dir / name).write_bytes(chunk)
        names.append(name)

    descriptor = {
        "format": "torchscript",
        "weightsManifest": [{"paths": names}],
        "byteLength": len(payload),
        "sha256": hashlib.sha256(payload).hexdigest(),
    }
    topology_path = out_dir / topology_file
    topology_path.write_text(json.dumps(descriptor, indent=2))
    return topology_path
