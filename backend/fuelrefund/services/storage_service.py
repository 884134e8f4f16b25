"""Blob storage for receipt images.

Two backends, selected via ``settings.STORAGE_BACKEND``:

1. **minio** (default): MinIO / S3-compatible object storage.
2. **filesystem**: files under ``settings.STORAGE_DIRECTORY``.

Objects are addressed by a *reference* (``namespace/uuid.ext``) that is
persisted on the receipt row. The blocking client calls run in a worker
thread so they never stall the event loop.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import uuid
from io import BytesIO
from pathlib import Path
from typing import Optional, Protocol

from minio import Minio
from minio.error import S3Error

from fuelrefund.core.config import settings
from fuelrefund.core.errors import BlobNotFound

logger = logging.getLogger(__name__)


class BlobStore(Protocol):
    async def put(self, data: bytes, mime_type: str, namespace: str) -> str: ...

    async def get(self, reference: str) -> bytes: ...

    async def delete(self, reference: str) -> None: ...


def _extension_for(mime_type: str) -> str:
    if mime_type == "image/jpeg":
        return ".jpg"
    return mimetypes.guess_extension(mime_type or "") or ".bin"


def new_reference(namespace: str, mime_type: str) -> str:
    safe_ns = "".join(c for c in str(namespace) if c.isalnum() or c in "-_") or "shared"
    return f"{safe_ns}/{uuid.uuid4().hex}{_extension_for(mime_type)}"


class MinioBlobStore:
    """Blob store backed by a MinIO bucket."""

    def __init__(self, client: Optional[Minio] = None, bucket: Optional[str] = None) -> None:
        self._client = client or Minio(
            settings.MINIO_ENDPOINT,
            access_key=settings.MINIO_ACCESS_KEY,
            secret_key=settings.MINIO_SECRET_KEY,
            secure=bool(settings.MINIO_USE_SSL),
        )
        self.bucket = bucket or settings.MINIO_BUCKET_NAME
        self._bucket_checked = False

    def _ensure_bucket(self) -> None:
        if self._bucket_checked:
            return
        if not self._client.bucket_exists(self.bucket):
            self._client.make_bucket(self.bucket)
        self._bucket_checked = True

    def _put(self, data: bytes, mime_type: str, reference: str) -> None:
        self._ensure_bucket()
        self._client.put_object(self.bucket, reference, BytesIO(data), len(data), content_type=mime_type)

    def _get(self, reference: str) -> bytes:
        try:
            resp = self._client.get_object(self.bucket, reference)
        except S3Error as exc:
            if exc.code in ("NoSuchKey", "NoSuchObject"):
                raise BlobNotFound(f"Blob not found: {reference}") from exc
            raise
        try:
            return resp.read()
        finally:
            resp.close()
            resp.release_conn()

    async def put(self, data: bytes, mime_type: str, namespace: str) -> str:
        reference = new_reference(namespace, mime_type)
        await asyncio.to_thread(self._put, data, mime_type, reference)
        logger.info("[storage] MinIO object put: %s size=%d", reference, len(data))
        return reference

    async def get(self, reference: str) -> bytes:
        data = await asyncio.to_thread(self._get, reference)
        logger.info("[storage] MinIO get ok key=%s bytes=%d", reference, len(data))
        return data

    async def delete(self, reference: str) -> None:
        # remove_object is a no-op for a missing key
        await asyncio.to_thread(self._client.remove_object, self.bucket, reference)
        logger.info("[storage] MinIO object removed: %s", reference)


class FilesystemBlobStore:
    """Blob store writing under a local directory."""

    def __init__(self, base_dir: Optional[str | Path] = None) -> None:
        base_path = Path(base_dir or settings.STORAGE_DIRECTORY)
        if not base_path.is_absolute():
            repo_root = Path(__file__).resolve().parents[3]
            base_path = repo_root / base_path
        self.base_dir = base_path.resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path_for(self, reference: str) -> Path:
        path = (self.base_dir / reference).resolve()
        if self.base_dir not in path.parents:
            raise BlobNotFound(f"Blob reference escapes storage root: {reference}")
        return path

    async def put(self, data: bytes, mime_type: str, namespace: str) -> str:
        reference = new_reference(namespace, mime_type)
        path = self._path_for(reference)
        path.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(path.write_bytes, data)
        logger.info("[storage] FS saved: %s bytes=%d", path, len(data))
        return reference

    async def get(self, reference: str) -> bytes:
        path = self._path_for(reference)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as exc:
            raise BlobNotFound(f"Blob not found: {reference}") from exc

    async def delete(self, reference: str) -> None:
        path = self._path_for(reference)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            logger.info("[storage] FS delete of missing blob treated as done: %s", reference)
            return
        logger.info("[storage] FS removed: %s", path)


def create_blob_store() -> BlobStore:
    """Build the blob store for the configured backend."""
    backend = (settings.STORAGE_BACKEND or "minio").lower()
    if backend == "filesystem":
        return FilesystemBlobStore()
    if backend != "minio":
        raise RuntimeError(f"Unknown STORAGE_BACKEND {backend!r}")
    return MinioBlobStore()
