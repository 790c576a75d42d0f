"""
Storage abstraction for odometer images and their thumbnails.
"""

from __future__ import annotations

import io
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import boto3
from PIL import Image

from ..core.config import settings
from ..core.errors import ExternalServiceError


logger = logging.getLogger("storage")

THUMBNAIL_SIZE = (320, 320)
MEDIA_PREFIX = "/media/uploads"

_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
}


@dataclass
class StorageResult:
    storage_path: str
    url: str
    thumbnail_url: Optional[str]


def build_image_key(user_id: str, content_type: Optional[str], vehicle_id: Optional[str] = None) -> str:
    ext = _EXTENSIONS.get((content_type or "").lower(), ".jpg")
    scope = vehicle_id or "unassigned"
    return f"odometer/{user_id}/{scope}/{uuid.uuid4().hex}{ext}"


def thumbnail_key(key: str) -> str:
    stem, _, _ = key.rpartition(".")
    return f"{stem or key}_thumb.jpg"


def make_thumbnail(data: bytes) -> Optional[bytes]:
    try:
        with Image.open(io.BytesIO(data)) as img:
            img = img.convert("RGB")
            img.thumbnail(THUMBNAIL_SIZE)
            out = io.BytesIO()
            img.save(out, format="JPEG", quality=80)
            return out.getvalue()
    except Exception as exc:
        logger.warning("Thumbnail generation failed: %s", exc)
        return None


class StorageProvider:
    def upload(self, *, data: bytes, key: str, content_type: Optional[str]) -> StorageResult:
        raise NotImplementedError

    def download(self, key: str) -> bytes:
        raise NotImplementedError


class LocalStorageProvider(StorageProvider):
    def __init__(self, root: str | Path | None = None, base_url: str | None = None) -> None:
        base_dir = root or settings.storage_dir
        if base_dir:
            self.root = Path(base_dir).expanduser()
        else:
            self.root = Path(__file__).resolve().parents[2] / "data" / "uploads"
        self.root.mkdir(parents=True, exist_ok=True)
        self.base_url = (base_url or settings.storage_public_base_url or MEDIA_PREFIX).rstrip("/")

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise ExternalServiceError(f"Storage key escapes root: {key}", provider="local")
        return path

    def upload(self, *, data: bytes, key: str, content_type: Optional[str]) -> StorageResult:
        out_path = self._path(key)
        try:
            out_path.parent.mkdir(parents=True, exist_ok=True)
            out_path.write_bytes(data)
        except OSError as exc:
            raise ExternalServiceError(f"Local storage write failed: {exc}", provider="local") from exc
        thumb_url = None
        thumb = make_thumbnail(data)
        if thumb is not None:
            thumb_key = thumbnail_key(key)
            self._path(thumb_key).write_bytes(thumb)
            thumb_url = f"{self.base_url}/{thumb_key}"
        return StorageResult(storage_path=key, url=f"{self.base_url}/{key}", thumbnail_url=thumb_url)

    def download(self, key: str) -> bytes:
        try:
            return self._path(key).read_bytes()
        except OSError as exc:
            raise ExternalServiceError(f"Local storage read failed: {exc}", provider="local") from exc


class S3StorageProvider(StorageProvider):
    def __init__(self, client=None) -> None:
        self.bucket = settings.s3_bucket or ""
        self.public_url = settings.s3_public_url
        if not self.bucket:
            raise RuntimeError("S3_BUCKET is required for s3 storage")
        self.client = client or boto3.client(
            "s3",
            endpoint_url=settings.s3_endpoint,
            region_name=settings.s3_region or settings.aws_region,
        )

    def _url(self, key: str) -> str:
        if self.public_url:
            return self.public_url.rstrip("/") + "/" + key
        return f"s3://{self.bucket}/{key}"

    def upload(self, *, data: bytes, key: str, content_type: Optional[str]) -> StorageResult:
        extra = {}
        if content_type:
            extra["ContentType"] = content_type
        try:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=data, **extra)
        except Exception as exc:
            raise ExternalServiceError(f"S3 upload failed: {exc}", provider="s3") from exc
        thumb_url = None
        thumb = make_thumbnail(data)
        if thumb is not None:
            thumb_key = thumbnail_key(key)
            try:
                self.client.put_object(Bucket=self.bucket, Key=thumb_key, Body=thumb, ContentType="image/jpeg")
                thumb_url = self._url(thumb_key)
            except Exception as exc:
                logger.warning("S3 thumbnail upload failed key=%s err=%s", thumb_key, exc)
        return StorageResult(storage_path=key, url=self._url(key), thumbnail_url=thumb_url)

    def download(self, key: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except Exception as exc:
            raise ExternalServiceError(f"S3 download failed: {exc}", provider="s3") from exc


def get_storage_provider() -> StorageProvider:
    backend = (settings.storage_backend or "local").lower()
    if backend == "s3":
        return S3StorageProvider()
    return LocalStorageProvider()
