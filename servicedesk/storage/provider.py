from typing import BinaryIO


class StorageProvider:
    def save(self, stream: BinaryIO, key: str, content_type: str) -> str:
        """Persist ``stream`` under ``key`` and return the URL clients should use to fetch it."""
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError
