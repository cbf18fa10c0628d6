"""
Blob storage backends for the file store.

Blobs are addressed by path only; the metadata lives in the database.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol
from urllib.parse import urlparse

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

R2_HOST_PATTERN = re.compile(r"^([a-z0-9]+)\.r2\.cloudflarestorage\.com$", re.IGNORECASE)

# Failures a backend may raise while reading or writing blobs
BLOB_ERRORS = (OSError, BotoCoreError, ClientError)


class BlobStorage(Protocol):
    """Defines the operations the file store needs from object storage."""

    async def put(self, path: str, content: bytes, media_type: str | None = None) -> None:
        ...

    async def exists(self, path: str) -> bool:
        ...

    async def delete(self, path: str) -> None:
        ...

    def public_url(self, path: str) -> str:
        ...

    def download_url(self, path: str, expires_in: int = 3600) -> str:
        ...


def join_url(base: str, path: str) -> str:
    return f"{base.rstrip('/')}/{path.lstrip('/')}"


@dataclass
class InMemoryBlobStorage:
    """Test double for storage interactions."""

    base_url: str = "https://example.test/storage"
    objects: dict[str, bytes] = field(default_factory=dict)
    fail_writes: bool = False

    async def put(self, path: str, content: bytes, media_type: str | None = None) -> None:
        if self.fail_writes:
            raise OSError(f"Simulated write failure for {path}")
        self.objects[path] = bytes(content)

    async def exists(self, path: str) -> bool:
        return path in self.objects

    async def delete(self, path: str) -> None:
        self.objects.pop(path, None)

    def public_url(self, path: str) -> str:
        return join_url(self.base_url, path)

    def download_url(self, path: str, expires_in: int = 3600) -> str:
        return self.public_url(path)


class LocalBlobStorage:
    """Filesystem storage rooted at a directory."""

    def __init__(self, root: str | Path, base_url: str = "/storage"):
        self.root = Path(root)
        self.base_url = base_url

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if not target.is_relative_to(self.root.resolve()):
            raise ValueError(f"Path escapes storage root: {path}")
        return target

    def _write(self, path: str, content: bytes) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        # Write to a sibling temp file then rename, so readers never see a partial blob
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=".upload-")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(content)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def put(self, path: str, content: bytes, media_type: str | None = None) -> None:
        await asyncio.to_thread(self._write, path, content)

    async def exists(self, path: str) -> bool:
        return await asyncio.to_thread(self._resolve(path).is_file)

    async def delete(self, path: str) -> None:
        await asyncio.to_thread(self._resolve(path).unlink, True)

    def public_url(self, path: str) -> str:
        return join_url(self.base_url, path)

    def download_url(self, path: str, expires_in: int = 3600) -> str:
        return self.public_url(path)


def derive_public_base(endpoint: str, bucket: str) -> str:
    """
    Derive a public base URL for an S3-compatible bucket.

    Cloudflare R2 endpoints map to the pub-<account>.r2.dev domain, other
    endpoints fall back to <endpoint>/<bucket>.
    """
    parsed = urlparse(endpoint) if endpoint else None
    host = parsed.hostname if parsed else None

    base = ""
    if host:
        match = R2_HOST_PATTERN.match(host)
        if match:
            base = f"https://pub-{match.group(1)}.r2.dev/{bucket}"
        else:
            base = f"{endpoint.rstrip('/')}/{bucket}"

    if not base:
        base = "/" + bucket.lstrip("/")
    return base.rstrip("/")


class S3BlobStorage:
    """S3-compatible storage (AWS S3, Cloudflare R2, MinIO)."""

    def __init__(
        self,
        bucket: str,
        endpoint: str,
        access_key_id: str,
        secret_access_key: str,
        region: str = "auto",
        public_base_url: str | None = None,
        client=None,
    ):
        self.bucket = bucket
        self.public_base = public_base_url or derive_public_base(endpoint, bucket)
        self._client = client or boto3.client(
            "s3",
            endpoint_url=endpoint or None,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            region_name=region,
            config=Config(signature_version="s3v4", retries={"max_attempts": 3}),
        )

    async def put(self, path: str, content: bytes, media_type: str | None = None) -> None:
        extra = {"ContentType": media_type} if media_type else {}
        await asyncio.to_thread(
            self._client.put_object,
            Bucket=self.bucket,
            Key=path,
            Body=content,
            ContentLength=len(content),
            **extra,
        )

    def _head(self, path: str) -> bool:
        try:
            self._client.head_object(Bucket=self.bucket, Key=path)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in {"404", "NoSuchKey", "NotFound"}:
                return False
            raise
        return True

    async def exists(self, path: str) -> bool:
        return await asyncio.to_thread(self._head, path)

    async def delete(self, path: str) -> None:
        await asyncio.to_thread(self._client.delete_object, Bucket=self.bucket, Key=path)

    def public_url(self, path: str) -> str:
        return join_url(self.public_base, path)

    def download_url(self, path: str, expires_in: int = 3600) -> str:
        """Presigned GET URL, valid for `expires_in` seconds."""
        return self._client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": path},
            ExpiresIn=expires_in,
        )


def build_blob_storage(settings) -> BlobStorage:
    """Create the configured blob backend."""
    if settings.storage_backend == "s3":
        logger.info("Using S3 blob storage bucket=%s", settings.s3_bucket)
        return S3BlobStorage(
            bucket=settings.s3_bucket,
            endpoint=settings.s3_endpoint,
            access_key_id=settings.s3_access_key_id,
            secret_access_key=settings.s3_secret_access_key,
            region=settings.s3_region,
            public_base_url=settings.public_base_url or None,
        )
    if settings.storage_backend == "local":
        return LocalBlobStorage(settings.storage_root, base_url=settings.public_base_url or "/storage")
    raise ValueError(f"Unknown storage backend: {settings.storage_backend}")
