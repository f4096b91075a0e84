# src/docrender/storage/factory.py
from __future__ import annotations

from typing import Optional

from ..config import (
    SUPPORTED_PROVIDERS,
    AwsStorageConfig,
    AzureStorageConfig,
    LocalStorageConfig,
    StorageConfig,
    validate_storage_config,
)
from ..exceptions import ConfigurationError
from ..retrying_io import RetryingIO
from .base import BaseStorageProvider


def get_storage_provider(config: StorageConfig, io: Optional[RetryingIO] = None) -> BaseStorageProvider:
    """
    Create a storage provider for a validated config.
    Cloud SDKs are imported only when their provider is selected.
    """
    validate_storage_config(config)

    if isinstance(config, LocalStorageConfig):
        from .local import LocalStorageProvider
        return LocalStorageProvider(config.base_directory, io=io)
    if isinstance(config, AwsStorageConfig):
        from .s3 import S3StorageProvider
        return S3StorageProvider(config, io=io)
    if isinstance(config, AzureStorageConfig):
        from .azure import AzureBlobStorageProvider
        return AzureBlobStorageProvider(config, io=io)

    raise ConfigurationError(
        f"Unsupported storage provider: {type(config).__name__}. Supported providers: {', '.join(SUPPORTED_PROVIDERS)}",
        field="Provider",
    )
