"""
Model loading utilities.

The loader:
 - stages the artifact through `ArtifactStore` on first use,
 - reassembles the shards in manifest order and loads the TorchScript payload,
 - keeps a single shared instance per `ModelCache`,
 - exposes `ModelCache.get()` for inference callers.
"""

from __future__ import annotations

from enum import Enum
import hashlib
from io import BytesIO
import logging
from threading import Lock
from typing import Callable, Optional

import torch

from . import config
from .artifacts import ArtifactLocation, ArtifactStore, LocalPaths
from .errors import ArtifactError, ModelLoadFailed
from .storage import LocalStaging, S3BlobStore

logger = logging.getLogger(__name__)

# Prefer CUDA -> Apple MPS -> CPU to support both GPU servers and local macOS dev.
if torch.cuda.is_available():
    _DEVICE = torch.device("cuda")
elif torch.backends.mps.is_available():  # type: ignore[attr-defined]
    _DEVICE = torch.device("mps")
else:
    _DEVICE = torch.device("cpu")


def get_device() -> torch.device:
    """Return the inference device (prefers CUDA when available)."""
    return _DEVICE


class ModelState(str, Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


def load_sharded_model(paths: LocalPaths, device: torch.device) -> torch.nn.Module:
    """Reassemble staged shards and load the TorchScript module they hold."""
    descriptor = paths.descriptor
    fmt = descriptor.get("format", "torchscript")
    if fmt != "torchscript":
        raise ModelLoadFailed(f"Unsupported model format: {fmt}")

    payload = b"".join(shard.read_bytes() for shard in paths.shards)
    expected_length = descriptor.get("byteLength")
    if expected_length is not None and int(expected_length) != len(payload):
        raise ModelLoadFailed(
            f"Reassembled model is {len(payload)} bytes, descriptor declares {expected_length}"
        )
    expected_digest = descriptor.get("sha256")
    if expected_digest and hashlib.sha256(payload).hexdigest() != expected_digest:
        raise ModelLoadFailed("Reassembled model does not match descriptor sha256")

    model = torch.jit.load(BytesIO(payload), map_location=device)
    model.eval()
    return model


class ModelCache:
    """
    Load-once holder for the classification model.

    The first `get()` fetches and deserializes the artifact while holding the
    lock; callers arriving meanwhile block on the same lock and receive the
    instance it produced, or the error it failed with. Once ready, reads skip
    the lock entirely. A failed load leaves the cache in FAILED and the next
    call made after the failure tries again.
    """

    def __init__(
        self,
        artifact_store: ArtifactStore,
        location: ArtifactLocation,
        loader: Callable[[LocalPaths, torch.device], torch.nn.Module] = load_sharded_model,
        device: Optional[torch.device] = None,
    ):
        self.artifact_store = artifact_store
        self.location = location
        self.loader = loader
        self.device = device or get_device()
        self._lock = Lock()
        self._model: Optional[torch.nn.Module] = None
        self._state = ModelState.UNLOADED
        # Bumped on every failed attempt; waiters compare it to the value
        # they saw on arrival to tell whether they queued behind a failure.
        self._failures = 0
        self._last_error: Optional[ModelLoadFailed] = None

    @property
    def state(self) -> ModelState:
        return self._state

    def _fail(self, error: ModelLoadFailed) -> ModelLoadFailed:
        self._failures += 1
        self._last_error = error
        self._state = ModelState.FAILED
        return error

    def get(self) -> torch.nn.Module:
        model = self._model
        if model is not None:
            return model

        seen_failures = self._failures
        with self._lock:
            if self._model is not None:
                return self._model
            if self._failures != seen_failures and self._last_error is not None:
                # The attempt this caller waited on failed; share its outcome.
                raise ModelLoadFailed(str(self._last_error)) from self._last_error

            self._state = ModelState.LOADING
            logger.info("Loading model from %s", self.location)
            try:
                paths = self.artifact_store.fetch(self.location)
                model = self.loader(paths, self.device)
            except ModelLoadFailed as exc:
                self._fail(exc)
                raise
            except ArtifactError as exc:
                raise self._fail(ModelLoadFailed(f"Could not fetch model artifact: {exc}")) from exc
            except Exception as exc:  # noqa: BLE001
                raise self._fail(ModelLoadFailed(f"Could not deserialize model: {exc}")) from exc

            staging = self.artifact_store.staging
            if staging.cleanup_after_load:
                try:
                    staging.cleanup()
                except OSError as exc:
                    logger.warning("Could not clean staging directory %s: %s", staging.root, exc)
            self._model = model
            self._state = ModelState.READY
            logger.info("Model loaded on device: %s", self.device)
        return model


def build_model_cache(
    settings: Optional[config.Settings] = None,
    inference_config: Optional[config.InferenceConfig] = None,
) -> ModelCache:
    """Wire a `ModelCache` against the S3-compatible store."""
    settings = settings or config.get_settings()
    inference_config = inference_config or config.InferenceConfig.from_settings(settings)
    store = ArtifactStore(
        S3BlobStore(settings),
        LocalStaging(settings.staging_dir, cleanup_after_load=settings.cleanup_staging),
    )
    location = ArtifactLocation.parse(
        inference_config.artifact_location,
        topology_file=settings.artifact_topology_file,
        shard_prefix=settings.artifact_shard_prefix,
    )
    return ModelCache(store, location)
