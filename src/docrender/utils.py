# src/docrender/utils.py
from __future__ import annotations

import hashlib
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional, Union

from slugify import slugify

from .exceptions import CorruptInputError, InputFileNotFoundError, UnsupportedFormatError
from .models import InputKind

logger = logging.getLogger("docrender")


# ----------------------------
# Format detection
# ----------------------------

_EXTENSION_KINDS: Dict[str, InputKind] = {
    ".jpg": InputKind.RASTER,
    ".jpeg": InputKind.RASTER,
    ".png": InputKind.RASTER,
    ".bmp": InputKind.RASTER,
    ".gif": InputKind.RASTER,
    ".webp": InputKind.RASTER,
    ".tif": InputKind.TIFF,
    ".tiff": InputKind.TIFF,
    ".pdf": InputKind.PDF,
}


def supported_extensions() -> List[str]:
    return sorted(_EXTENSION_KINDS)


def sniff_kind(head: bytes) -> Optional[InputKind]:
    """Identify a document family from its leading bytes."""
    if head.startswith(b"%PDF"):
        return InputKind.PDF
    if head[:4] in (b"II*\x00", b"MM\x00*", b"II+\x00", b"MM\x00+"):
        return InputKind.TIFF
    if head.startswith(b"\x89PNG\r\n\x1a\n"):
        return InputKind.RASTER
    if head.startswith(b"\xff\xd8\xff"):
        return InputKind.RASTER
    if head[:6] in (b"GIF87a", b"GIF89a"):
        return InputKind.RASTER
    if head.startswith(b"BM"):
        return InputKind.RASTER
    if head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return InputKind.RASTER
    return None


def detect_format(path: Union[str, Path]) -> InputKind:
    """
    Decide which page renderer handles a file.
    Content wins over the extension when both are known and disagree.
    """
    p = Path(path)
    if not p.is_file():
        raise InputFileNotFoundError(f"Input file not found: {p}")

    with open(p, "rb") as f:
        head = f.read(16)

    by_content = sniff_kind(head)
    by_ext = _EXTENSION_KINDS.get(p.suffix.lower())

    if by_content is not None:
        if by_ext is not None and by_ext != by_content:
            logger.debug("Extension of %s says %s but content says %s", p.name, by_ext.value, by_content.value)
        return by_content
    if by_ext is not None:
        if not head:
            raise CorruptInputError(f"Input file is empty: {p}")
        # Extension is known but the magic bytes are not; let the decoder decide.
        return by_ext

    raise UnsupportedFormatError(
        f"Unsupported file format: {p.suffix or '(no extension)'}. "
        f"Supported formats: {', '.join(supported_extensions())}"
    )


# ----------------------------
# Output naming
# ----------------------------

def safe_fname(name: str, max_len: int = 80) -> str:
    """Filesystem and URL safe stem for output artifacts."""
    s = slugify(name, lowercase=False, separator="_", max_length=max_len)
    return s or "document"


def reserve_unique_path(directory: Union[str, Path], file_name: str) -> Path:
    """
    Atomically claim a file name in `directory`. When the name is taken, a numeric
    suffix is appended (report.png, report_1.png, report_2.png, ...).
    The returned path exists as an empty placeholder owned by the caller.
    """
    d = Path(directory)
    d.mkdir(parents=True, exist_ok=True)
    stem, suffix = Path(file_name).stem, Path(file_name).suffix
    counter = 0
    while True:
        candidate = d / (file_name if counter == 0 else f"{stem}_{counter}{suffix}")
        try:
            fd = os.open(candidate, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            counter += 1
            continue
        os.close(fd)
        return candidate


# ----------------------------
# Job scratch directories
# ----------------------------

LEGACY_JOB_DIR_PREFIX = "docrender_job_"


def job_temp_dir(temp_root: Union[str, Path], job_id: str) -> Path:
    """Current layout, <temp_root>/jobs/<job_id>."""
    return Path(temp_root) / "jobs" / job_id


def legacy_job_temp_dirs(temp_root: Union[str, Path], job_id: str) -> List[Path]:
    """Flat layout used by older releases, <temp_root>/docrender_job_<job_id>[_*]."""
    root = Path(temp_root)
    if not root.is_dir():
        return []
    return sorted(root.glob(f"{LEGACY_JOB_DIR_PREFIX}{job_id}*"))


def file_digest(path: Union[str, Path], chunk_size: int = 1 << 20) -> str:
    h = hashlib.sha1()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            h.update(chunk)
    return h.hexdigest()
