# src/docrender/storage/local.py
from __future__ import annotations

import logging
import os
import shutil
import time
from datetime import timedelta
from pathlib import Path
from typing import List, Optional, Union

from ..exceptions import StorageKeyExistsError
from ..retrying_io import RetryingIO
from .base import BaseStorageProvider

logger = logging.getLogger("docrender")


def same_file_path(a: Union[str, Path], b: Union[str, Path]) -> bool:
    """True when both paths address the same file, honouring case-insensitive filesystems."""
    na = os.path.normcase(os.path.abspath(a))
    nb = os.path.normcase(os.path.abspath(b))
    if na == nb:
        return True
    try:
        return os.path.samefile(a, b)
    except OSError:
        return False


class LocalStorageProvider(BaseStorageProvider):
    """Keys map to files under a base directory; URLs are absolute file paths."""

    name = "Local"

    def __init__(self, base_directory: Union[str, Path], io: Optional[RetryingIO] = None):
        super().__init__(io)
        self.base_directory = Path(base_directory).expanduser().resolve()
        self.base_directory.mkdir(parents=True, exist_ok=True)
        logger.debug("Local storage rooted at %s", self.base_directory)

    @property
    def local_root(self) -> Path:
        return self.base_directory

    def path_for(self, key: str) -> Path:
        return self.base_directory / self.normalize_key(key)

    def key_for(self, path: Union[str, Path]) -> str:
        """Inverse of path_for for files that live under the base directory."""
        rel = Path(os.path.abspath(path)).relative_to(self.base_directory)
        return rel.as_posix()

    @property
    def namespace(self) -> str:
        return f"file://{self.base_directory}"

    def put(self, source_path: Union[str, Path], destination_key: str, overwrite: bool = True) -> str:
        src = Path(source_path)
        dest = self.path_for(destination_key)

        # Writing a file onto itself would truncate it, and the failed copy looks like a lock.
        if same_file_path(src, dest):
            logger.debug("Source already at destination, skipping copy, %s", dest)
            return self.url_for(destination_key)

        if not src.is_file():
            raise FileNotFoundError(f"Source file not found: {src}")
        if not overwrite and dest.exists():
            raise StorageKeyExistsError(f"{destination_key} already exists in {self.base_directory}", destination_key)

        dest.parent.mkdir(parents=True, exist_ok=True)
        self.io.write_with_retry(lambda p: shutil.copy2(src, p), dest)
        logger.debug("Stored %s as %s", src.name, destination_key)
        return self.url_for(destination_key)

    def get(self, key: str) -> Path:
        p = self.path_for(key)
        if not p.is_file():
            raise FileNotFoundError(f"No stored file for key {key!r}")
        return p

    def delete(self, key: str) -> bool:
        p = self.path_for(key)
        if not p.exists():
            return False
        return self.io.delete_with_retry(p)

    def exists(self, key: str) -> bool:
        return self.path_for(key).is_file()

    def url_for(self, key: str) -> str:
        return str(self.path_for(key))

    def list_files(self, prefix: str = "") -> List[str]:
        root = self.path_for(prefix) if prefix.strip("/ ") else self.base_directory
        if root.is_file():
            return [self.key_for(root)]
        if not root.is_dir():
            return []
        return sorted(self.key_for(p) for p in root.rglob("*") if p.is_file())

    def cleanup_old_files(self, max_age: timedelta = timedelta(days=7)) -> int:
        """Delete stored files older than `max_age`. Returns how many were removed."""
        cutoff = time.time() - max_age.total_seconds()
        removed = 0
        for p in list(self.base_directory.rglob("*")):
            try:
                if p.is_file() and p.stat().st_mtime < cutoff:
                    if self.io.delete_with_retry(p):
                        removed += 1
            except OSError as e:
                logger.warning("Could not inspect %s during cleanup, %s", p, e)
        if removed:
            logger.info("Removed %d stored files older than %s", removed, max_age)
        return removed
