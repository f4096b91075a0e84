from .base import BaseStorageProvider, RemoteStorageProvider
from .local import LocalStorageProvider, same_file_path
from .factory import get_storage_provider

__all__ = [
    "BaseStorageProvider",
    "RemoteStorageProvider",
    "LocalStorageProvider",
    "same_file_path",
    "get_storage_provider",
]
