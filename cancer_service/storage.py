"""
Storage primitives: the remote blob store and the local staging directory.

`S3BlobStore` talks to any S3-compatible endpoint through boto3 and maps
botocore failures onto `BlobNotFound` (permanent) or `TransientStoreError`
(worth retrying later). Tests substitute any object with the same methods.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
import shutil
from typing import List, Optional, Protocol

import boto3
from botocore.client import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from . import config
from .errors import BlobNotFound, TransientStoreError

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"NoSuchKey", "NoSuchBucket", "NotFound", "404"}


@dataclass(frozen=True)
class ObjectInfo:
    key: str
    size: int = 0


class BlobStore(Protocol):
    def download(self, bucket: str, key: str) -> bytes:
        ...

    def list_objects(self, bucket: str, prefix: str) -> List[ObjectInfo]:
        ...

    def upload(self, bucket: str, key: str, data: bytes, content_type: str) -> None:
        ...


class S3BlobStore:
    """Blob store backed by an S3-compatible bucket."""

    def __init__(self, settings: Optional[config.Settings] = None):
        self._settings = settings or config.get_settings()
        self._client = None

    def _get_client(self):
        if self._client is None:
            s = self._settings
            session = boto3.session.Session()
            self._client = session.client(
                service_name="s3",
                aws_access_key_id=s.s3_access_key_id,
                aws_secret_access_key=s.s3_secret_access_key,
                endpoint_url=s.s3_endpoint,
                region_name=s.s3_region,
                config=BotoConfig(
                    signature_version="s3v4",
                    connect_timeout=s.store_connect_timeout_seconds,
                    read_timeout=s.store_read_timeout_seconds,
                    retries={"max_attempts": 3, "mode": "standard"},
                ),
            )
        return self._client

    @staticmethod
    def _translate(exc: Exception, bucket: str, key: str) -> Exception:
        if isinstance(exc, ClientError):
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in _NOT_FOUND_CODES:
                return BlobNotFound(f"s3://{bucket}/{key} not found")
        return TransientStoreError(f"Blob store request for s3://{bucket}/{key} failed: {exc}")

    def download(self, bucket: str, key: str) -> bytes:
        try:
            response = self._get_client().get_object(Bucket=bucket, Key=key)
            return response["Body"].read()
        except (BotoCoreError, ClientError) as exc:
            raise self._translate(exc, bucket, key) from exc

    def list_objects(self, bucket: str, prefix: str) -> List[ObjectInfo]:
        objects: List[ObjectInfo] = []
        try:
            paginator = self._get_client().get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
                for item in page.get("Contents", []):
                    objects.append(ObjectInfo(key=item["Key"], size=int(item.get("Size", 0))))
        except (BotoCoreError, ClientError) as exc:
            raise self._translate(exc, bucket, prefix) from exc
        return objects

    def upload(self, bucket: str, key: str, data: bytes, content_type: str) -> None:
        try:
            self._get_client().put_object(
                Bucket=bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as exc:
            raise self._translate(exc, bucket, key) from exc


class FileSystemBlobStore:
    """Blob store laid out as `<root>/<bucket>/<key>` on local disk."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def _path(self, bucket: str, key: str) -> Path:
        return self.root / bucket / key

    def download(self, bucket: str, key: str) -> bytes:
        path = self._path(bucket, key)
        if not path.is_file():
            raise BlobNotFound(f"{path} not found")
        return path.read_bytes()

    def list_objects(self, bucket: str, prefix: str) -> List[ObjectInfo]:
        base = self.root / bucket
        if not base.is_dir():
            return []
        objects = []
        for path in sorted(base.rglob("*")):
            key = path.relative_to(base).as_posix()
            if path.is_file() and key.startswith(prefix):
                objects.append(ObjectInfo(key=key, size=path.stat().st_size))
        return objects

    def upload(self, bucket: str, key: str, data: bytes, content_type: str) -> None:
        path = self._path(bucket, key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)


class LocalStaging:
    """
    Local working directory the artifact is downloaded into.

    `cleanup_after_load` tells the model cache whether the staged files can be
    removed once the model is in memory.
    """

    def __init__(self, root: Path, cleanup_after_load: bool = False):
        self.root = Path(root)
        self.cleanup_after_load = cleanup_after_load

    def ensure(self) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        return self.root

    def path_for(self, name: str) -> Path:
        # Only the basename is kept so remote keys cannot escape the root.
        return self.root / Path(name).name

    def write(self, name: str, data: bytes) -> Path:
        path = self.path_for(name)
        path.write_bytes(data)
        return path

    def cleanup(self) -> None:
        if self.root.exists():
            logger.info("Removing staged artifact files in %s", self.root)
            shutil.rmtree(self.root)
