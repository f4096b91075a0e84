# src/docrender/exceptions.py
from typing import Optional


class DocRenderError(Exception):
    """Base exception for the docrender library."""
    pass


class ConfigurationError(DocRenderError):
    """Raised when a configuration block is invalid for the selected provider or backend."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


# --- Input errors (fatal, never retried) ---
class InputError(DocRenderError):
    """Raised when the input file is missing, corrupt or unsupported."""
    pass


class InputFileNotFoundError(InputError):
    pass


class UnsupportedFormatError(InputError):
    pass


class FileTooLargeError(InputError):
    pass


class CorruptInputError(InputError):
    pass


class TransientIoError(DocRenderError):
    """File lock contention that outlived the retry schedule."""
    pass


class PageRenderError(DocRenderError):
    """A single page of a multi-page document could not be rendered."""

    def __init__(self, message: str, page_number: int):
        super().__init__(message)
        self.page_number = page_number


# --- Backend errors (OCR / cloud storage) ---
class BackendError(DocRenderError):
    pass


class OcrBackendError(BackendError):
    pass


class StorageBackendError(BackendError):
    pass


class StorageKeyExistsError(StorageBackendError):
    """A no-overwrite upload found the destination key already taken."""

    def __init__(self, message: str, key: str):
        super().__init__(message)
        self.key = key


class JobCancelledError(DocRenderError):
    """Raised at a stage boundary when the owning job was cancelled."""
    pass
