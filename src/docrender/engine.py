# src/docrender/engine.py
from __future__ import annotations

import contextlib
import logging
import tempfile
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, List, Optional, Set, Tuple, Union

from PIL import Image

from .config import ProcessingOptions
from .exceptions import (
    ConfigurationError,
    CorruptInputError,
    DocRenderError,
    FileTooLargeError,
    InputError,
    InputFileNotFoundError,
    JobCancelledError,
    OcrBackendError,
    PageRenderError,
    StorageKeyExistsError,
    TransientIoError,
)
from .models import ImageFile, ProcessingMetrics, ProcessingResult, ProgressStatus
from .ocr_backends.base import BaseOCREngine
from .ocr_backends.loader import OcrEngineCache
from .progress import ProgressReporter
from .renderers import BasePageRenderer, get_page_renderer
from .retrying_io import RetryingIO, is_transient_lock_error
from .storage.base import BaseStorageProvider
from .thumbnails import make_thumbnail, to_8bit
from .utils import detect_format, job_temp_dir, reserve_unique_path, safe_fname

logger = logging.getLogger("docrender")

PAGE_SEPARATOR = "\n\n"


@dataclass
class _Artifact:
    local_path: Path
    key: str
    url: str
    size: int
    width: int
    height: int


@dataclass
class _RunState:
    """What one process() call has written so far, for rollback."""
    storage: BaseStorageProvider
    work_dir: Path
    keys: List[str] = field(default_factory=list)
    claims: List[Tuple[str, str]] = field(default_factory=list)


@contextlib.contextmanager
def _stage(metrics: ProcessingMetrics, attr: str):
    start = time.perf_counter()
    try:
        yield
    finally:
        setattr(metrics, attr, getattr(metrics, attr) + time.perf_counter() - start)


class ConversionEngine:
    """
    Converts one input document into normalized PNG pages plus a thumbnail and
    persists them through a storage provider.

    Terminal progress statuses (Completed / Failed) belong to whoever owns the job
    record, so process() stops reporting after GeneratingThumbnail.
    """

    def __init__(
        self,
        storage: BaseStorageProvider,
        io: Optional[RetryingIO] = None,
        ocr_engines: Optional[OcrEngineCache] = None,
        temp_dir: Union[str, Path, None] = None,
    ):
        self.storage = storage
        self.io = io or RetryingIO()
        self.ocr_engines = ocr_engines or OcrEngineCache()
        self.temp_dir = Path(temp_dir) if temp_dir else Path(tempfile.gettempdir()) / "docrender_temp"
        # (namespace, key) pairs handed out to running jobs, shared by every worker
        self._claims_lock = threading.Lock()
        self._claimed: Set[Tuple[str, str]] = set()

    # --- Public API ---
    def process(
        self,
        input_path: Union[str, Path],
        options: Optional[ProcessingOptions] = None,
        *,
        job_id: Optional[str] = None,
        reporter: Optional[ProgressReporter] = None,
        cancel_event: Optional[threading.Event] = None,
        storage: Optional[BaseStorageProvider] = None,
        ocr_engine: Optional[BaseOCREngine] = None,
        work_dir: Optional[Path] = None,
    ) -> ProcessingResult:
        """
        Convert `input_path`. Every failure except cancellation is returned as a
        failed ProcessingResult; JobCancelledError propagates after rollback.
        """
        wall_start = time.perf_counter()
        src = Path(input_path)
        options = options or ProcessingOptions()
        job_id = job_id or uuid.uuid4().hex
        reporter = reporter or ProgressReporter(None, job_id, src.name)
        metrics = ProcessingMetrics()

        owns_work_dir = work_dir is None
        run = _RunState(
            storage=storage or self.storage,
            work_dir=Path(work_dir) if work_dir else job_temp_dir(self.temp_dir, job_id),
        )

        try:
            result = self._convert(src, options, run, reporter, metrics, cancel_event, ocr_engine, wall_start)
            return result
        except JobCancelledError:
            logger.info("Conversion of %s cancelled, rolling back %d artifacts", src.name, len(run.keys))
            self._rollback(run)
            raise
        except InputError as e:
            logger.error("Input error for %s, %s", src.name, e)
            self._rollback(run)
            return ProcessingResult.failed(str(e), e, self._finish(metrics, wall_start))
        except Exception as e:
            logger.exception("Conversion of %s failed", src.name)
            self._rollback(run)
            return ProcessingResult.failed(f"Error processing {src.name}: {e}", e, self._finish(metrics, wall_start))
        finally:
            self._release_claims(run)
            if owns_work_dir and run.work_dir.exists():
                self.io.delete_with_retry(run.work_dir)

    # --- Pipeline ---
    def _convert(
        self,
        src: Path,
        options: ProcessingOptions,
        run: _RunState,
        reporter: ProgressReporter,
        metrics: ProcessingMetrics,
        cancel_event: Optional[threading.Event],
        ocr_engine: Optional[BaseOCREngine],
        wall_start: float,
    ) -> ProcessingResult:
        # --- Step 1: load and validate the input ---
        reporter.report(ProgressStatus.STARTING, f"Starting processing of {src.name}")
        self._check_cancel(cancel_event, src)
        reporter.report(ProgressStatus.LOADING_FILE, f"Loading {src.name}")
        with _stage(metrics, "file_load_time"):
            if not src.is_file():
                raise InputFileNotFoundError(f"Input file not found: {src}")
            file_size = src.stat().st_size
            limit = int(options.max_file_size_mb * 1024 * 1024)
            if options.max_file_size_mb and file_size > limit:
                raise FileTooLargeError(
                    f"{src.name} is {file_size / (1024 * 1024):.1f} MB, the limit is {options.max_file_size_mb} MB"
                )
            kind = detect_format(src)

        if options.run_ocr and ocr_engine is None:
            ocr_engine = self._resolve_ocr(options)

        # --- Step 2: open the page renderer ---
        self._check_cancel(cancel_event, src)
        reporter.report(ProgressStatus.PROCESSING_FILE, f"Decoding {kind.value} document")
        with _stage(metrics, "decode_time"):
            renderer = get_page_renderer(kind, src, options.dpi)

        with renderer:
            total = renderer.page_count
            metrics.pages_total = total
            if total <= 0:
                raise CorruptInputError(f"{src.name} contains no pages")

            stem = safe_fname(src.stem)
            rel_dir = self._prefix(options)
            pages: List[Tuple[int, _Artifact]] = []
            texts: List[str] = []
            warnings: List[str] = []

            # --- Step 3: one PNG per page ---
            for index in range(total):
                page_no = index + 1
                self._check_cancel(cancel_event, src)
                reporter.report(
                    ProgressStatus.CONVERTING_PAGE,
                    f"Converting page {page_no} of {total}",
                    current_page=page_no,
                    total_pages=total,
                )
                name = f"{stem}.png" if total == 1 else f"{stem}_page_{page_no}.png"
                try:
                    art = self._render_and_persist(renderer, index, name, rel_dir, run, metrics)
                except PageRenderError as e:
                    metrics.failed_pages.append(page_no)
                    warnings.append(str(e))
                    logger.warning("Skipping page %d of %s, %s", page_no, src.name, e)
                    continue
                pages.append((index, art))

                if ocr_engine is not None:
                    self._check_cancel(cancel_event, src)
                    reporter.report(
                        ProgressStatus.PROCESSING_FILE,
                        f"Extracting text from page {page_no} of {total}",
                        current_page=page_no,
                        total_pages=total,
                    )
                    text = self._ocr_page(ocr_engine, art.local_path, page_no, metrics)
                    if text:
                        texts.append(text)

            metrics.pages_rendered = len(pages)
            if not pages:
                raise CorruptInputError(f"None of the {total} pages of {src.name} could be rendered")

            # --- Step 4: thumbnail from the first good page ---
            self._check_cancel(cancel_event, src)
            reporter.report(
                ProgressStatus.GENERATING_THUMBNAIL,
                "Generating thumbnail",
                current_page=total,
                total_pages=total,
            )
            thumb = self._thumbnail(renderer, pages[0][0], f"{stem}_thumb.png", rel_dir, options, run, metrics, warnings)

        # --- Step 5: optional copy of the untouched original ---
        if options.preserve_original:
            with _stage(metrics, "storage_time"):
                self._store_new(run, f"{rel_dir}/originals".strip("/"), src, src.name)

        first = pages[0][1]
        multi = total > 1
        split = tuple(
            ImageFile(
                original_path=str(src),
                file_name=art.local_path.name,
                original_format=src.suffix.lower(),
                width=art.width,
                height=art.height,
                page_count=1,
                converted_png_path=art.url,
                split_page_paths=(),
                storage_keys=(art.key,),
                file_size=art.size,
            )
            for _, art in pages
        ) if multi else ()

        processed = ImageFile(
            original_path=str(src),
            file_name=src.name,
            original_format=src.suffix.lower(),
            width=first.width,
            height=first.height,
            is_multi_page=multi,
            page_count=len(pages),
            converted_png_path=first.url,
            thumbnail_path=thumb.url if thumb else None,
            split_page_paths=tuple(art.url for _, art in pages) if multi else (),
            storage_keys=tuple(run.keys),
            file_size=file_size,
        )

        if metrics.failed_pages:
            message = (
                f"Processed {len(pages)} of {total} pages of {src.name}; "
                f"failed pages: {', '.join(str(n) for n in metrics.failed_pages)}"
            )
            logger.warning(message)
        else:
            message = f"Successfully processed {src.name}" + (f" ({total} pages)" if multi else "")

        self._finish(metrics, wall_start)
        logger.info("%s in %.2fs", message, metrics.total_time)
        return ProcessingResult(
            success=True,
            message=message,
            processed_image=processed,
            split_pages=split,
            processing_time=metrics.total_time,
            metrics=metrics,
            extracted_text=PAGE_SEPARATOR.join(texts) if texts else None,
            warnings=tuple(warnings),
        )

    # --- Helpers ---
    def _render_and_persist(
        self,
        renderer: BasePageRenderer,
        index: int,
        name: str,
        rel_dir: str,
        run: _RunState,
        metrics: ProcessingMetrics,
    ) -> _Artifact:
        with _stage(metrics, "conversion_time"):
            image = to_8bit(renderer.render_page(index))
            local = self._write_png(image, name, rel_dir, run, metrics)
            with self._discard_on_error(local):
                size = self._read_size(local, metrics)
        with _stage(metrics, "storage_time"), self._discard_on_error(local):
            key, url = self._persist(local, rel_dir, run)
        return _Artifact(local, key, url, size, image.width, image.height)

    def _thumbnail(
        self,
        renderer: BasePageRenderer,
        index: int,
        name: str,
        rel_dir: str,
        options: ProcessingOptions,
        run: _RunState,
        metrics: ProcessingMetrics,
        warnings: List[str],
    ) -> Optional[_Artifact]:
        with _stage(metrics, "thumbnail_time"):
            try:
                source = renderer.render_page(index, max_long_edge=options.thumbnail_size * options.oversample)
                thumb = make_thumbnail(source, options.thumbnail_size, options.oversample)
            except (PageRenderError, ValueError) as e:
                warnings.append(f"Thumbnail not generated: {e}")
                logger.warning("Thumbnail for %s not generated, %s", renderer.file_path.name, e)
                return None
            local = self._write_png(thumb, name, rel_dir, run, metrics)
            with self._discard_on_error(local):
                size = self._read_size(local, metrics)
        with _stage(metrics, "storage_time"), self._discard_on_error(local):
            key, url = self._persist(local, rel_dir, run)
        return _Artifact(local, key, url, size, thumb.width, thumb.height)

    @contextlib.contextmanager
    def _discard_on_error(self, local: Path) -> Iterator[None]:
        """Remove a written PNG that never made it into the run's tracked keys."""
        try:
            yield
        except Exception:
            self.io.delete_with_retry(local)
            raise

    def _write_png(self, image: Image.Image, name: str, rel_dir: str, run: _RunState,
                   metrics: ProcessingMetrics) -> Path:
        root = run.storage.local_root
        directory = (root / rel_dir if rel_dir else root) if root is not None else run.work_dir
        local = reserve_unique_path(directory, name)
        try:
            self.io.write_with_retry(lambda p: image.save(p, format="PNG"), local, on_retry=metrics.record_retry)
        except Exception as e:
            self.io.delete_with_retry(local)
            if is_transient_lock_error(e):
                raise TransientIoError(f"Write of {local.name} still locked after retries: {e}") from e
            raise
        return local

    def _read_size(self, local: Path, metrics: ProcessingMetrics) -> int:
        try:
            return self.io.read_size_with_retry(local, on_retry=metrics.record_retry)
        except OSError as e:
            if is_transient_lock_error(e):
                raise TransientIoError(f"Size check of {local.name} still locked after retries: {e}") from e
            raise

    def _persist(self, local: Path, rel_dir: str, run: _RunState) -> Tuple[str, str]:
        root = run.storage.local_root
        if root is not None and local.is_relative_to(root):
            key = local.relative_to(root).as_posix()
            url = run.storage.put(local, key)
            run.keys.append(key)
            return key, url
        return self._store_new(run, rel_dir, local, local.name)

    def _store_new(self, run: _RunState, rel_dir: str, source: Path, file_name: str) -> Tuple[str, str]:
        """Store `source` under rel_dir with a name no other artifact or running job uses."""
        storage = run.storage
        root = storage.local_root
        if root is not None:
            reserved = reserve_unique_path(root / rel_dir if rel_dir else root, file_name)
            key = reserved.relative_to(root).as_posix()
            # tracked before the copy so a failed put still removes the placeholder
            run.keys.append(key)
            return key, storage.put(source, key)

        counter = 0
        while True:
            key, counter = self._claim_remote_key(storage, rel_dir, file_name, counter, run)
            try:
                url = storage.put(source, key, overwrite=False)
            except StorageKeyExistsError:
                logger.debug("Key %s was taken by another writer, trying the next name", key)
                counter += 1
                continue
            run.keys.append(key)
            return key, url

    def _claim_remote_key(self, storage: BaseStorageProvider, rel_dir: str, file_name: str,
                          counter: int, run: _RunState) -> Tuple[str, int]:
        stem, suffix = Path(file_name).stem, Path(file_name).suffix
        namespace = storage.namespace
        while True:
            candidate = file_name if counter == 0 else f"{stem}_{counter}{suffix}"
            key = f"{rel_dir}/{candidate}" if rel_dir else candidate
            claim = (namespace, key)
            with self._claims_lock:
                free = claim not in self._claimed
                if free:
                    self._claimed.add(claim)
            if free:
                try:
                    taken = storage.exists(key)
                except Exception:
                    self._drop_claims([claim])
                    raise
                if not taken:
                    run.claims.append(claim)
                    return key, counter
                self._drop_claims([claim])
            counter += 1

    def _drop_claims(self, claims: List[Tuple[str, str]]) -> None:
        with self._claims_lock:
            self._claimed.difference_update(claims)

    def _release_claims(self, run: _RunState) -> None:
        if run.claims:
            self._drop_claims(run.claims)
            run.claims.clear()

    def _ocr_page(self, engine: BaseOCREngine, image_path: Path, page_no: int,
                  metrics: ProcessingMetrics) -> Optional[str]:
        start = time.perf_counter()
        try:
            result = engine.extract_text(image_path)
            logger.debug("OCR page %d, %d chars, confidence %s", page_no, len(result.text), result.confidence)
            return result.text
        except Exception as e:
            # OCR is best effort, the page itself is already persisted.
            metrics.ocr_failures += 1
            logger.warning("OCR failed on page %d (%s), %s", page_no, image_path.name, e)
            return None
        finally:
            metrics.ocr_time += time.perf_counter() - start

    def _resolve_ocr(self, options: ProcessingOptions) -> Optional[BaseOCREngine]:
        try:
            return self.ocr_engines.get(options.ocr_backend, options.ocr_backend_kwargs)
        except (ConfigurationError, OcrBackendError) as e:
            logger.warning("OCR backend %r unavailable, continuing without text extraction, %s", options.ocr_backend, e)
            return None

    def _rollback(self, run: _RunState) -> None:
        for key in reversed(run.keys):
            try:
                run.storage.delete(key)
            except (DocRenderError, OSError) as e:
                logger.warning("Could not roll back stored artifact %s, %s", key, e)
        run.keys.clear()

    @staticmethod
    def _prefix(options: ProcessingOptions) -> str:
        prefix = (options.output_prefix or "").replace("\\", "/").strip("/")
        return BaseStorageProvider.normalize_key(prefix) if prefix else ""

    @staticmethod
    def _check_cancel(cancel_event: Optional[threading.Event], src: Path) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise JobCancelledError(f"Processing of {src.name} was cancelled")

    @staticmethod
    def _finish(metrics: ProcessingMetrics, wall_start: float) -> ProcessingMetrics:
        metrics.overhead_time = max(0.0, time.perf_counter() - wall_start - metrics.stage_total())
        return metrics
