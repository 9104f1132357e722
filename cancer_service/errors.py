"""
Service exception types.

Core components raise these and stay HTTP-agnostic; `api.py` is the only
place that maps them onto status codes and client-facing messages.
"""

from __future__ import annotations

from typing import Iterable, Optional


class CancerServiceError(Exception):
    """Base class for every error raised by the service."""


class ArtifactError(CancerServiceError):
    """Raised when the model artifact cannot be retrieved."""


class ArtifactUnavailable(ArtifactError):
    """The topology descriptor is missing or unreadable."""


class PartialArtifact(ArtifactError):
    """One or more shards declared by the descriptor could not be staged."""

    def __init__(self, missing: Iterable[str]):
        self.missing = sorted(missing)
        super().__init__(f"Missing model shards: {', '.join(self.missing)}")


class TransientStoreError(ArtifactError):
    """Network, timeout or credential failure talking to the blob store."""


class BlobNotFound(CancerServiceError):
    """The requested object does not exist in the blob store."""


class ModelLoadFailed(CancerServiceError):
    """Fetching or deserializing the model failed."""


class UnsupportedImageFormat(CancerServiceError):
    """The uploaded bytes could not be decoded as an image."""


class InferenceError(CancerServiceError):
    """The model rejected the input or produced an unusable output."""


class PredictionFailed(CancerServiceError):
    """A stage of the prediction pipeline failed."""

    def __init__(self, stage: str, message: Optional[str] = None):
        self.stage = stage
        super().__init__(message or f"Prediction failed during {stage}")


class StorageError(CancerServiceError):
    """Saving or listing prediction records failed."""
