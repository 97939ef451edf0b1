"""Provisioning engine: tenant site storage lifecycle over the storage gateway."""

from __future__ import annotations

import hashlib
import logging
import mimetypes
import time
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, TypeVar

from ..errors import (
    BucketNotFound,
    InvalidKey,
    StorageConflict,
    StorageProviderError,
    StorageTeardownIncomplete,
    TemplateApplyIncomplete,
)
from ..metrics import STORAGE_RETRIES
from ..storage.gateway import ObjectInfo, StorageGateway
from ..storage.templates import TemplateRepository
from .tenant import StorageDescriptor, Tenant

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_KEY_BYTES = 1024
DEFAULT_CONTENT_TYPE = "application/octet-stream"


@dataclass(slots=True)
class TemplateApplication:
    template: str
    written: list[str]
    skipped: list[str]
    replaced: bool


@dataclass(slots=True, frozen=True)
class PublishedFile:
    key: str
    content_type: str
    size: int
    url: str | None


@dataclass(slots=True)
class _Checkpoint:
    """Keys already written by an interrupted template application."""

    cleared: bool = False
    digests: dict[str, str] = field(default_factory=dict)


def normalize_key(key: str) -> str:
    """Return the canonical object key or raise ``InvalidKey``.

    Leading slashes and ``.`` segments are dropped; ``..`` segments,
    backslashes and control characters are rejected outright.
    """
    if not isinstance(key, str) or not key.strip():
        raise InvalidKey("object key is required")
    if "\\" in key or any(ord(ch) < 32 or ord(ch) == 127 for ch in key):
        raise InvalidKey("object key contains illegal characters", {"key": key})

    parts = [part for part in key.split("/") if part not in ("", ".")]
    if any(part == ".." for part in parts):
        raise InvalidKey("object key escapes the tenant namespace", {"key": key})
    if not parts:
        raise InvalidKey("object key is required", {"key": key})

    normalized = "/".join(parts)
    if len(normalized.encode("utf-8")) > MAX_KEY_BYTES:
        raise InvalidKey("object key too long", {"key": normalized[:64]})
    return normalized


def guess_content_type(key: str) -> str:
    content_type, _ = mimetypes.guess_type(key)
    return content_type or DEFAULT_CONTENT_TYPE


class ProvisioningEngine:
    """Creates, fills, and tears down tenant buckets.

    Object stores offer no multi-object transaction, so every mutating
    operation is idempotent and convergent: re-invoking it after a failure
    finishes the job instead of duplicating it. Each gateway call runs on a
    worker pool under a timeout and transient failures are retried with
    exponential backoff.
    """

    def __init__(
        self,
        gateway: StorageGateway,
        templates: TemplateRepository,
        *,
        bucket_prefix: str = "site",
        timeout_seconds: float = 10.0,
        retry_attempts: int = 3,
        backoff_seconds: float = 0.2,
        replace_all_default: bool = False,
        max_workers: int = 8,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._gateway = gateway
        self._templates = templates
        self._bucket_prefix = bucket_prefix
        self._timeout = timeout_seconds
        self._attempts = max(1, retry_attempts)
        self._backoff = backoff_seconds
        self._replace_all_default = replace_all_default
        self._sleep = sleep
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="storage")
        self._checkpoints: dict[tuple[str, str], _Checkpoint] = {}
        self._checkpoint_lock = Lock()

    @property
    def provider(self) -> str:
        return self._gateway.provider

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def bucket_name(self, tenant: Tenant) -> str:
        return f"{self._bucket_prefix}-{tenant.name}"

    def create_storage(self, tenant: Tenant, *, resume: bool = False) -> StorageDescriptor:
        """Create the tenant bucket and return its descriptor.

        A lost reply can leave the bucket behind while the call reports
        failure. When the conflict follows an earlier attempt in the same
        call, or ``resume`` marks a retry of an interrupted provisioning run,
        the existing bucket is adopted instead of raising ``StorageConflict``.
        """
        bucket = self.bucket_name(tenant)
        attempts = 0

        def create_bucket(name: str) -> str:
            nonlocal attempts
            attempts += 1
            return self._gateway.create_bucket(name)

        try:
            site_url = self._call("create_bucket", create_bucket, bucket)
        except StorageConflict:
            if not resume and attempts < 2:
                raise
            self._call("list_objects", self._gateway.list_objects, bucket)
            site_url = self._gateway.site_url(bucket)
            logger.warning("adopted existing bucket %s for tenant %s", bucket, tenant.name)
        else:
            logger.info("created bucket %s for tenant %s", bucket, tenant.name)
        return StorageDescriptor(provider=self.provider, bucket=bucket, site_url=site_url)

    def remove_storage(self, tenant: Tenant) -> None:
        bucket = self.bucket_name(tenant)
        try:
            keys = [info.key for info in self._call("list_objects", self._gateway.list_objects, bucket)]
        except BucketNotFound:
            logger.info("bucket %s already removed", bucket)
            self._drop_checkpoints(bucket)
            return

        deleted = 0
        for key in keys:
            try:
                self._call("delete_object", self._gateway.delete_object, bucket, key)
            except BucketNotFound:
                break
            except StorageProviderError as exc:
                raise StorageTeardownIncomplete(
                    "storage teardown stopped while deleting objects",
                    phase="objects",
                    details={"bucket": bucket, "deleted": deleted, "remaining": len(keys) - deleted},
                ) from exc
            deleted += 1

        try:
            self._call("delete_bucket", self._gateway.delete_bucket, bucket)
        except BucketNotFound:
            pass
        except StorageProviderError as exc:
            raise StorageTeardownIncomplete(
                "objects removed but bucket deletion failed",
                phase="bucket",
                details={"bucket": bucket, "deleted": deleted, "remaining": 0},
            ) from exc

        self._drop_checkpoints(bucket)
        logger.info("removed bucket %s (%d objects)", bucket, deleted)

    def apply_template(
        self, tenant: Tenant, template_name: str, replace_all: bool | None = None
    ) -> TemplateApplication:
        """Copy every file of ``template_name`` into the tenant bucket.

        Colliding keys are overwritten. Other objects survive unless
        ``replace_all`` (or the configured default) asks for a cleared bucket.
        An interrupted run leaves a checkpoint so the retry skips files that
        were already written with identical content.
        """
        files = self._templates.resolve(template_name)
        bucket = self.bucket_name(tenant)
        replace = self._replace_all_default if replace_all is None else replace_all

        with self._checkpoint_lock:
            checkpoint = self._checkpoints.pop((bucket, template_name), None) or _Checkpoint()

        if replace and not checkpoint.cleared:
            for info in list(self._call("list_objects", self._gateway.list_objects, bucket)):
                self._call("delete_object", self._gateway.delete_object, bucket, info.key)
            checkpoint.cleared = True
            checkpoint.digests.clear()

        written: list[str] = []
        skipped: list[str] = []
        pending = [(normalize_key(item.path), item.content) for item in files]
        for index, (key, content) in enumerate(pending):
            digest = hashlib.sha256(content).hexdigest()
            if checkpoint.digests.get(key) == digest:
                skipped.append(key)
                continue
            try:
                self._call("put_object", self._gateway.put_object, bucket, key, content, guess_content_type(key))
            except StorageProviderError as exc:
                if not checkpoint.digests and not checkpoint.cleared:
                    raise
                with self._checkpoint_lock:
                    self._checkpoints[(bucket, template_name)] = checkpoint
                raise TemplateApplyIncomplete(
                    "template copy stopped part way",
                    phase="copy",
                    details={
                        "template": template_name,
                        "written": sorted(checkpoint.digests),
                        "pending": [name for name, _ in pending[index:]],
                    },
                ) from exc
            checkpoint.digests[key] = digest
            written.append(key)

        logger.info(
            "applied template %s to %s: %d written, %d skipped",
            template_name,
            bucket,
            len(written),
            len(skipped),
        )
        return TemplateApplication(template=template_name, written=written, skipped=skipped, replaced=replace)

    def publish_file(
        self,
        tenant: Tenant,
        key: str,
        content: str | bytes,
        content_type: str | None = None,
    ) -> PublishedFile:
        normalized = normalize_key(key)
        data = content.encode("utf-8") if isinstance(content, str) else content
        resolved_type = content_type or guess_content_type(normalized)
        bucket = self.bucket_name(tenant)
        self._call("put_object", self._gateway.put_object, bucket, normalized, data, resolved_type)
        url = f"{tenant.storage.site_url.rstrip('/')}/{normalized}" if tenant.storage else None
        return PublishedFile(key=normalized, content_type=resolved_type, size=len(data), url=url)

    def get_structure(self, tenant: Tenant) -> Iterator[ObjectInfo]:
        """Yield the tenant's objects ordered by key; a missing bucket yields nothing."""
        bucket = self.bucket_name(tenant)
        try:
            listing = list(self._call("list_objects", self._gateway.list_objects, bucket))
        except BucketNotFound:
            return
        yield from sorted(listing, key=lambda info: info.key)

    def _call(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        last_error: StorageProviderError | None = None
        for attempt in range(self._attempts):
            future = self._executor.submit(fn, *args)
            try:
                return future.result(timeout=self._timeout)
            except FutureTimeout:
                future.cancel()
                last_error = StorageProviderError(
                    f"{operation} timed out", retryable=True, details={"timeout": self._timeout}
                )
            except StorageProviderError as exc:
                if not exc.retryable:
                    raise
                last_error = exc

            if attempt + 1 < self._attempts:
                delay = self._backoff * (2**attempt)
                STORAGE_RETRIES.labels(operation=operation).inc()
                logger.warning(
                    "storage %s failed (attempt %d/%d), retrying in %.2fs: %s",
                    operation,
                    attempt + 1,
                    self._attempts,
                    delay,
                    last_error,
                )
                self._sleep(delay)

        assert last_error is not None
        raise last_error

    def _drop_checkpoints(self, bucket: str) -> None:
        with self._checkpoint_lock:
            for key in [key for key in self._checkpoints if key[0] == bucket]:
                del self._checkpoints[key]
