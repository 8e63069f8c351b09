from typing import BinaryIO

from azure.storage.blob import BlobServiceClient, ContentSettings

from .provider import StorageProvider


class BlobStorageProvider(StorageProvider):
    def __init__(self, connection: str, container: str) -> None:
        if not connection or not container:
            raise RuntimeError("AZURE_BLOB_CONNECTION and AZURE_BLOB_CONTAINER must be set")
        self._service = BlobServiceClient.from_connection_string(connection)
        self._container = container

    def save(self, stream: BinaryIO, key: str, content_type: str) -> str:
        client = self._service.get_blob_client(self._container, key.lstrip("/"))
        client.upload_blob(stream, overwrite=True, content_settings=ContentSettings(content_type=content_type))
        return client.url

    def delete(self, key: str) -> None:
        client = self._service.get_blob_client(self._container, key.lstrip("/"))
        client.delete_blob()
