"""
Prediction record persistence.

Two implementations share the `PredictionRepository` protocol: an in-memory
store for local runs and tests, and an S3-backed store that writes one JSON
object per record next to the model bucket.
"""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from threading import Lock
from typing import Dict, List, Protocol
import uuid

from pydantic import BaseModel, ValidationError

from .errors import CancerServiceError, StorageError
from .pipeline import PredictionResult
from .storage import BlobStore

logger = logging.getLogger(__name__)


def _timestamp() -> str:
    """ISO-8601 UTC with milliseconds and a `Z` suffix."""
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


class PredictionRecord(BaseModel):
    id: str
    result: str
    suggestion: str
    createdAt: str

    @classmethod
    def create(cls, prediction: PredictionResult) -> "PredictionRecord":
        return cls(
            id=str(uuid.uuid4()),
            result=prediction.label.value,
            suggestion=prediction.suggestion,
            createdAt=_timestamp(),
        )


class HistoryEntry(BaseModel):
    result: str
    createdAt: str
    suggestion: str


class HistoryItem(BaseModel):
    id: str
    history: HistoryEntry


def to_history(record: PredictionRecord) -> HistoryItem:
    return HistoryItem(
        id=record.id,
        history=HistoryEntry(
            result=record.result,
            createdAt=record.createdAt,
            suggestion=record.suggestion,
        ),
    )


class PredictionRepository(Protocol):
    def save(self, record: PredictionRecord) -> None:
        ...

    def list_all(self) -> List[PredictionRecord]:
        ...


class InMemoryPredictionRepository:
    def __init__(self):
        self._records: Dict[str, PredictionRecord] = {}
        self._lock = Lock()

    def save(self, record: PredictionRecord) -> None:
        with self._lock:
            self._records[record.id] = record

    def list_all(self) -> List[PredictionRecord]:
        with self._lock:
            return list(self._records.values())


class S3PredictionRepository:
    """Stores each record as `<prefix>/<id>.json` in a bucket."""

    def __init__(self, blob_store: BlobStore, bucket: str, prefix: str = "predictions"):
        self.blob_store = blob_store
        self.bucket = bucket
        self.prefix = prefix.strip("/")

    def _key(self, record_id: str) -> str:
        return f"{self.prefix}/{record_id}.json"

    def save(self, record: PredictionRecord) -> None:
        logger.info("Saving prediction %s to s3://%s/%s", record.id, self.bucket, self._key(record.id))
        try:
            self.blob_store.upload(
                self.bucket,
                self._key(record.id),
                record.model_dump_json().encode("utf-8"),
                "application/json",
            )
        except CancerServiceError as exc:
            raise StorageError(f"Could not save prediction {record.id}") from exc

    def list_all(self) -> List[PredictionRecord]:
        records: List[PredictionRecord] = []
        try:
            objects = self.blob_store.list_objects(self.bucket, f"{self.prefix}/")
            for obj in objects:
                if not obj.key.endswith(".json"):
                    continue
                records.append(PredictionRecord.model_validate_json(self.blob_store.download(self.bucket, obj.key)))
        except CancerServiceError as exc:
            raise StorageError("Could not list predictions") from exc
        except ValidationError as exc:
            raise StorageError("Stored prediction record is malformed") from exc
        return sorted(records, key=lambda r: r.createdAt)
