"""Object storage gateway contract and the in-memory implementation."""

from __future__ import annotations

import hashlib
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Protocol

from ..errors import BucketNotFound, StorageConflict, StorageProviderError


@dataclass(slots=True, frozen=True)
class ObjectInfo:
    """Listing metadata for one stored object."""

    key: str
    size: int
    content_type: str
    last_modified: datetime
    etag: str


class StorageGateway(Protocol):
    """Narrow contract over a hosting-capable object store.

    Implementations raise ``BucketNotFound`` for a missing bucket,
    ``StorageConflict`` when creating a bucket that exists, and
    ``StorageProviderError`` (with ``retryable`` set for transient trouble)
    for anything else. Deleting a missing key is not an error.
    ``create_bucket`` returns the same URL ``site_url`` renders for the name.
    """

    provider: str

    def site_url(self, name: str) -> str: ...

    def create_bucket(self, name: str) -> str: ...

    def delete_bucket(self, name: str) -> None: ...

    def put_object(self, bucket: str, key: str, data: bytes, content_type: str) -> None: ...

    def delete_object(self, bucket: str, key: str) -> None: ...

    def list_objects(self, bucket: str, prefix: str = "") -> Iterable[ObjectInfo]: ...


@dataclass(slots=True)
class _StoredObject:
    data: bytes
    info: ObjectInfo


class InMemoryStorageGateway:
    """Thread-safe process-local object store with website-style URLs."""

    provider = "memory"

    def __init__(self, site_url_template: str = "http://{bucket}.s3-website.local") -> None:
        self._site_url_template = site_url_template
        self._buckets: dict[str, dict[str, _StoredObject]] = {}
        self._lock = Lock()

    def create_bucket(self, name: str) -> str:
        with self._lock:
            if name in self._buckets:
                raise StorageConflict("bucket already exists", {"bucket": name})
            self._buckets[name] = {}
        return self.site_url(name)

    def site_url(self, name: str) -> str:
        return self._site_url_template.format(bucket=name)

    def delete_bucket(self, name: str) -> None:
        with self._lock:
            objects = self._require(name)
            if objects:
                raise StorageProviderError(
                    "bucket not empty", retryable=False, details={"bucket": name, "objects": len(objects)}
                )
            del self._buckets[name]

    def put_object(self, bucket: str, key: str, data: bytes, content_type: str) -> None:
        info = ObjectInfo(
            key=key,
            size=len(data),
            content_type=content_type,
            last_modified=datetime.now(timezone.utc),
            etag=hashlib.md5(data).hexdigest(),
        )
        with self._lock:
            self._require(bucket)[key] = _StoredObject(data=data, info=info)

    def delete_object(self, bucket: str, key: str) -> None:
        with self._lock:
            self._require(bucket).pop(key, None)

    def list_objects(self, bucket: str, prefix: str = "") -> list[ObjectInfo]:
        with self._lock:
            objects = self._require(bucket)
            return [objects[key].info for key in sorted(objects) if key.startswith(prefix)]

    def get_object(self, bucket: str, key: str) -> bytes:
        with self._lock:
            return self._require(bucket)[key].data

    def bucket_exists(self, name: str) -> bool:
        with self._lock:
            return name in self._buckets

    def _require(self, bucket: str) -> dict[str, _StoredObject]:
        try:
            return self._buckets[bucket]
        except KeyError:
            raise BucketNotFound("bucket not found", {"bucket": bucket}) from None
