"""
Local filesystem storage provider for development.
Saves uploads under a local directory instead of Azure Blob Storage.
"""
import shutil
from pathlib import Path
from typing import BinaryIO
from urllib.parse import quote

import structlog

from .provider import StorageProvider


log = structlog.get_logger(__name__)


class LocalStorageProvider(StorageProvider):
    """Local filesystem storage provider for development."""

    def __init__(self, base_dir: str = "var/storage", public_base_url: str = "http://localhost:8000"):
        self.base_dir = Path(base_dir)
        self.public_base_url = public_base_url.rstrip("/")
        (self.base_dir / "uploads").mkdir(parents=True, exist_ok=True)

    def _get_path(self, key: str) -> Path:
        # Remove leading slash and sanitize
        clean_key = key.lstrip("/").replace("..", "").replace("\\", "/")
        return self.base_dir / "uploads" / clean_key

    def save(self, stream: BinaryIO, key: str, content_type: str) -> str:
        path = self._get_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            shutil.copyfileobj(stream, f)
        log.info("upload_stored", provider="local", key=key, content_type=content_type)
        return f"{self.public_base_url}/uploads/{quote(key.lstrip('/'))}"

    def delete(self, key: str) -> None:
        path = self._get_path(key)
        if path.exists():
            path.unlink()
