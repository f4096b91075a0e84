# src/docrender/storage/azure.py
from __future__ import annotations

import logging
import mimetypes
from pathlib import Path
from typing import Any, List, Optional, Union

from azure.core.exceptions import AzureError, ResourceExistsError, ResourceNotFoundError
from azure.storage.blob import BlobServiceClient, ContentSettings

from ..config import AzureStorageConfig, validate_storage_config
from ..exceptions import StorageBackendError, StorageKeyExistsError
from ..retrying_io import RetryingIO
from .base import RemoteStorageProvider

logger = logging.getLogger("docrender")


class AzureBlobStorageProvider(RemoteStorageProvider):
    name = "Azure"

    def __init__(
        self,
        config: AzureStorageConfig,
        io: Optional[RetryingIO] = None,
        container_client: Any = None,
        download_dir: Optional[Path] = None,
    ):
        super().__init__(io, download_dir)
        self.config = validate_storage_config(config)
        self.container_name = config.container_name
        if container_client is None:
            if config.connection_string:
                service = BlobServiceClient.from_connection_string(config.connection_string)
            else:
                service = BlobServiceClient(
                    account_url=f"https://{config.account_name}.blob.core.windows.net",
                    credential=config.account_key,
                )
            container_client = service.get_container_client(config.container_name)
        self._container = container_client
        logger.info("Azure blob storage initialised for container %s", self.container_name)

    @property
    def namespace(self) -> str:
        return f"azure://{self.config.account_name or self._container.url}/{self.container_name}"

    def put(self, source_path: Union[str, Path], destination_key: str, overwrite: bool = True) -> str:
        key = self.normalize_key(destination_key)
        content_type = mimetypes.guess_type(str(source_path))[0] or "application/octet-stream"
        try:
            with open(source_path, "rb") as data:
                self._container.upload_blob(
                    name=key,
                    data=data,
                    overwrite=overwrite,
                    content_settings=ContentSettings(content_type=content_type),
                )
        except ResourceExistsError as e:
            raise StorageKeyExistsError(f"azure://{self.container_name}/{key} already exists", key) from e
        except AzureError as e:
            raise StorageBackendError(f"Azure upload of {key} to {self.container_name} failed: {e}") from e
        logger.debug("Uploaded %s to azure://%s/%s", Path(source_path).name, self.container_name, key)
        return self.url_for(key)

    def get(self, key: str) -> Path:
        key = self.normalize_key(key)
        local = self._temp_path_for(key)
        try:
            with open(local, "wb") as f:
                self._container.download_blob(key).readinto(f)
        except AzureError as e:
            self.release(local)
            raise StorageBackendError(f"Azure download of {key} from {self.container_name} failed: {e}") from e
        return local

    def delete(self, key: str) -> bool:
        key = self.normalize_key(key)
        try:
            self._container.delete_blob(key)
            return True
        except ResourceNotFoundError:
            return False
        except AzureError as e:
            logger.warning("Azure delete of %s failed, %s", key, e)
            return False

    def exists(self, key: str) -> bool:
        key = self.normalize_key(key)
        try:
            return bool(self._container.get_blob_client(key).exists())
        except AzureError as e:
            raise StorageBackendError(f"Azure existence check of {key} failed: {e}") from e

    def url_for(self, key: str) -> str:
        key = self.normalize_key(key)
        if self.config.account_name:
            return f"https://{self.config.account_name}.blob.core.windows.net/{self.container_name}/{key}"
        return f"{str(self._container.url).rstrip('/')}/{key}"

    def list_files(self, prefix: str = "") -> List[str]:
        try:
            return sorted(b.name for b in self._container.list_blobs(name_starts_with=prefix.lstrip("/") or None))
        except AzureError as e:
            raise StorageBackendError(f"Azure listing of {self.container_name}/{prefix} failed: {e}") from e
