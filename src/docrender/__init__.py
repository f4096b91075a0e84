"""docrender: document to PNG conversion with thumbnails, OCR and pluggable storage."""

from .config import (
    AwsStorageConfig,
    AzureStorageConfig,
    LocalStorageConfig,
    ProcessingOptions,
    RenderConfig,
    load_config,
    storage_config_from_dict,
    validate_storage_config,
)
from .engine import ConversionEngine
from .exceptions import DocRenderError
from .models import ImageFile, Job, JobStatus, ProcessingMetrics, ProcessingResult, ProgressReport, ProgressStatus
from .progress import ProgressBroadcaster, ProgressReporter
from .retrying_io import RetryingIO, is_transient_lock_error
from .scheduler import JobScheduler

__version__ = "1.0.0"

__all__ = [
    "AwsStorageConfig",
    "AzureStorageConfig",
    "LocalStorageConfig",
    "ProcessingOptions",
    "RenderConfig",
    "load_config",
    "storage_config_from_dict",
    "validate_storage_config",
    "ConversionEngine",
    "DocRenderError",
    "ImageFile",
    "Job",
    "JobStatus",
    "ProcessingMetrics",
    "ProcessingResult",
    "ProgressReport",
    "ProgressStatus",
    "ProgressBroadcaster",
    "ProgressReporter",
    "RetryingIO",
    "is_transient_lock_error",
    "JobScheduler",
]
