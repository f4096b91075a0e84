# src/docrender/storage/base.py
from __future__ import annotations

import contextlib
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterator, List, Optional, Union

from ..retrying_io import RetryingIO

logger = logging.getLogger("docrender")


class BaseStorageProvider(ABC):
    """
    Interface for persisting artifacts under provider-agnostic storage keys.
    Keys use forward slashes, e.g. "scans/invoice_page_1.png".
    """

    name: str = "base"

    def __init__(self, io: Optional[RetryingIO] = None):
        self.io = io or RetryingIO()

    @property
    def local_root(self) -> Optional[Path]:
        """Directory that backs the keys on this machine, None for remote providers."""
        return None

    @property
    def namespace(self) -> str:
        """Identity of the key space; two providers with equal namespaces address the same objects."""
        return f"{type(self).__name__}:{id(self)}"

    @abstractmethod
    def put(self, source_path: Union[str, Path], destination_key: str, overwrite: bool = True) -> str:
        """
        Copy or upload a local file and return its URL. With overwrite=False an
        existing object is left alone and StorageKeyExistsError is raised.
        """
        raise NotImplementedError

    @abstractmethod
    def get(self, key: str) -> Path:
        """Return a local path holding the content of `key`. Remote providers download to a temp file."""
        raise NotImplementedError

    @abstractmethod
    def delete(self, key: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def exists(self, key: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def url_for(self, key: str) -> str:
        raise NotImplementedError

    @abstractmethod
    def list_files(self, prefix: str = "") -> List[str]:
        """Keys under `prefix`, sorted."""
        raise NotImplementedError

    def release(self, local_path: Union[str, Path]) -> None:
        """Give back a path obtained from get(). Never raises."""
        return None

    @contextlib.contextmanager
    def open_local(self, key: str) -> Iterator[Path]:
        path = self.get(key)
        try:
            yield path
        finally:
            self.release(path)

    @staticmethod
    def normalize_key(key: str) -> str:
        k = str(key).replace("\\", "/").strip("/")
        parts = [p for p in k.split("/") if p not in ("", ".")]
        if any(p == ".." for p in parts):
            raise ValueError(f"Storage key must not escape its root: {key!r}")
        if not parts:
            raise ValueError("Storage key is empty")
        return "/".join(parts)


class RemoteStorageProvider(BaseStorageProvider):
    """Shared temp-file handling for providers that must download before reading."""

    def __init__(self, io: Optional[RetryingIO] = None, download_dir: Optional[Path] = None):
        super().__init__(io)
        self.download_dir = download_dir
        self._downloads: set = set()

    def _temp_path_for(self, key: str) -> Path:
        suffix = Path(key).suffix
        fd, name = tempfile.mkstemp(prefix="docrender_dl_", suffix=suffix, dir=self.download_dir)
        os.close(fd)
        path = Path(name)
        self._downloads.add(path)
        return path

    def release(self, local_path: Union[str, Path]) -> None:
        p = Path(local_path)
        if p not in self._downloads:
            return
        self._downloads.discard(p)
        if not self.io.delete_with_retry(p):
            logger.warning("Temporary download %s could not be removed", p)
