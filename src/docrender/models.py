# src/docrender/models.py
from __future__ import annotations

import enum
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, enum.Enum):
    QUEUED = "Queued"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class ProgressStatus(str, enum.Enum):
    STARTING = "Starting"
    LOADING_FILE = "LoadingFile"
    PROCESSING_FILE = "ProcessingFile"
    CONVERTING_PAGE = "ConvertingPage"
    GENERATING_THUMBNAIL = "GeneratingThumbnail"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ProgressStatus.COMPLETED, ProgressStatus.FAILED)


class InputKind(str, enum.Enum):
    """Page renderer families the engine dispatches to."""
    RASTER = "raster"
    TIFF = "tiff"
    PDF = "pdf"


@dataclass(frozen=True)
class ImageFile:
    """A converted document. Paths are the URLs returned by the storage provider."""
    original_path: str
    file_name: str
    original_format: str
    width: int = 0
    height: int = 0
    is_multi_page: bool = False
    page_count: int = 1
    converted_png_path: Optional[str] = None
    thumbnail_path: Optional[str] = None
    split_page_paths: Tuple[str, ...] = ()
    storage_keys: Tuple[str, ...] = ()
    file_size: int = 0
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["split_page_paths"] = list(self.split_page_paths)
        d["storage_keys"] = list(self.storage_keys)
        d["created_at"] = self.created_at.isoformat()
        return d


@dataclass
class ProcessingMetrics:
    """Per-stage wall-clock durations in seconds. Each stage is written by the engine only."""
    file_load_time: float = 0.0
    decode_time: float = 0.0
    conversion_time: float = 0.0
    thumbnail_time: float = 0.0
    ocr_time: float = 0.0
    storage_time: float = 0.0
    overhead_time: float = 0.0
    io_retries: int = 0
    ocr_failures: int = 0
    pages_total: int = 0
    pages_rendered: int = 0
    failed_pages: List[int] = field(default_factory=list)

    def stage_total(self) -> float:
        return (
            self.file_load_time + self.decode_time + self.conversion_time
            + self.thumbnail_time + self.ocr_time + self.storage_time
        )

    @property
    def total_time(self) -> float:
        return self.stage_total() + self.overhead_time

    def record_retry(self, *_args) -> None:
        self.io_retries += 1

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["total_time"] = round(self.total_time, 4)
        for k, v in d.items():
            if isinstance(v, float):
                d[k] = round(v, 4)
        return d


@dataclass(frozen=True)
class ProcessingResult:
    success: bool
    message: str
    processed_image: Optional[ImageFile] = None
    split_pages: Tuple[ImageFile, ...] = ()
    processing_time: float = 0.0
    metrics: Optional[ProcessingMetrics] = None
    extracted_text: Optional[str] = None
    error: Optional[BaseException] = None
    warnings: Tuple[str, ...] = ()

    @classmethod
    def failed(cls, message: str, error: Optional[BaseException] = None,
               metrics: Optional[ProcessingMetrics] = None) -> "ProcessingResult":
        return cls(
            success=False,
            message=message,
            error=error,
            metrics=metrics,
            processing_time=metrics.total_time if metrics else 0.0,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "processed_image": self.processed_image.to_dict() if self.processed_image else None,
            "split_pages": [p.to_dict() for p in self.split_pages],
            "processing_time": round(self.processing_time, 4),
            "metrics": self.metrics.to_dict() if self.metrics else None,
            "extracted_text": self.extracted_text,
            "error": f"{type(self.error).__name__}: {self.error}" if self.error else None,
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class ProgressReport:
    job_id: str
    file_name: str
    status: ProgressStatus
    current_file: int = 1
    total_files: int = 1
    current_page: int = 0
    total_pages: int = 0
    progress_percentage: float = 0.0
    message: str = ""
    error_message: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        d["timestamp"] = self.timestamp.isoformat()
        return d


@dataclass(frozen=True)
class OcrResult:
    text: str
    confidence: Optional[float] = None
    duration: float = 0.0


@dataclass
class Job:
    """
    Scheduler-owned job record. Mutated only by the worker holding it, under the
    scheduler lock; callers receive copies from JobScheduler.get_job().
    """
    id: str
    input_path: Path
    options: Any
    status: JobStatus = JobStatus.QUEUED
    submitted_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Optional[ProcessingResult] = None
    cancelled: bool = False
    error_message: Optional[str] = None
    from_storage: bool = False
    history: List[Tuple[JobStatus, datetime]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "input_path": str(self.input_path),
            "status": self.status.value,
            "submitted_at": self.submitted_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "cancelled": self.cancelled,
            "error_message": self.error_message,
            "result": self.result.to_dict() if self.result else None,
        }
