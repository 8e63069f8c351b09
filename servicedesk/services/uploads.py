import os
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

import structlog
from fastapi import UploadFile
from slugify import slugify

from ..config import Settings
from ..errors import BadRequest
from ..storage.blob_provider import BlobStorageProvider
from ..storage.local_provider import LocalStorageProvider
from ..storage.provider import StorageProvider


log = structlog.get_logger(__name__)


@dataclass
class StoredImage:
    key: str
    url: str


def get_storage(settings: Settings) -> StorageProvider:
    """
    Azure Blob when it is configured, local filesystem otherwise.
    """
    if settings.azure_blob_connection and settings.azure_blob_container:
        return BlobStorageProvider(settings.azure_blob_connection, settings.azure_blob_container)
    return LocalStorageProvider(settings.storage_dir, settings.public_base_url)


def canonical_key(kind_key: str, original_name: str) -> str:
    today = datetime.utcnow().strftime("%Y-%m-%d")
    safe_name = slugify(os.path.splitext(original_name)[0]) or "image"
    ext = os.path.splitext(original_name)[1].lower()
    return f"cases/{slugify(kind_key)}/{today}/{uuid.uuid4().hex}-{safe_name}{ext}"


def store_case_images(
    storage: StorageProvider,
    kind_key: str,
    files: Optional[List[UploadFile]],
    max_images: int,
) -> List[StoredImage]:
    """Validate then save every upload. A failed save removes the images already written."""
    files = [f for f in (files or []) if f is not None and f.filename]
    if len(files) > max_images:
        raise BadRequest(f"At most {max_images} images are allowed")
    for f in files:
        if not (f.content_type or "").startswith("image/"):
            raise BadRequest(f"{f.filename} is not an image")
    stored: List[StoredImage] = []
    try:
        for f in files:
            key = canonical_key(kind_key, f.filename)
            stored.append(StoredImage(key, storage.save(f.file, key, f.content_type)))
    except Exception:
        discard_images(storage, stored)
        raise
    return stored


def discard_images(storage: StorageProvider, images: List[StoredImage]) -> None:
    for image in images:
        try:
            storage.delete(image.key)
        except Exception:
            log.exception("upload_cleanup_failed", key=image.key)
