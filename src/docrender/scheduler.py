# src/docrender/scheduler.py
from __future__ import annotations

import copy
import logging
import queue
import threading
import uuid
from dataclasses import replace
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from .config import ProcessingOptions, RenderConfig
from .engine import ConversionEngine
from .exceptions import DocRenderError, JobCancelledError
from .models import Job, JobStatus, ProcessingResult, ProgressReport, ProgressStatus, utcnow
from .ocr_backends.loader import OcrEngineCache
from .progress import ProgressBroadcaster, ProgressReporter, Subscription
from .retrying_io import RetryingIO
from .storage.base import BaseStorageProvider
from .storage.factory import get_storage_provider
from .utils import job_temp_dir, legacy_job_temp_dirs

logger = logging.getLogger("docrender")

_STOP = object()


class JobScheduler:
    """
    Fixed-size pool of worker threads draining a FIFO queue of conversion jobs.

    The job table and the queue are the only shared state; both are touched under
    self._lock or through queue.Queue. Each job runs start to finish on one worker.
    """

    def __init__(
        self,
        config: Optional[RenderConfig] = None,
        *,
        storage: Optional[BaseStorageProvider] = None,
        broadcaster: Optional[ProgressBroadcaster] = None,
        engine: Optional[ConversionEngine] = None,
        io: Optional[RetryingIO] = None,
        autostart: bool = True,
    ):
        self.config = (config or RenderConfig()).validate()
        self.io = io or RetryingIO()
        self.storage = storage or get_storage_provider(self.config.storage, io=self.io)
        self.broadcaster = broadcaster or ProgressBroadcaster()
        self.engine = engine or ConversionEngine(
            self.storage, io=self.io, ocr_engines=OcrEngineCache(), temp_dir=self.config.temp_dir
        )
        self.temp_dir = Path(self.config.temp_dir)

        self._lock = threading.Lock()
        self._jobs: Dict[str, Job] = {}
        self._cancel: Dict[str, threading.Event] = {}
        self._done: Dict[str, threading.Event] = {}
        self._providers: Dict[str, BaseStorageProvider] = {}
        self._queue: "queue.Queue" = queue.Queue()
        self._workers: List[threading.Thread] = []
        self._stopped = False

        if autostart:
            self.start()

    # --- Lifecycle ---
    def start(self) -> None:
        with self._lock:
            if self._workers:
                return
            for n in range(self.config.num_workers):
                t = threading.Thread(target=self._worker_loop, name=f"docrender-worker-{n + 1}", daemon=True)
                self._workers.append(t)
                t.start()
        logger.info("Job scheduler started with %d workers", self.config.num_workers)

    def shutdown(self, wait: bool = True, cancel_pending: bool = False, timeout: Optional[float] = None) -> None:
        """Stop accepting jobs. Queued jobs still run unless cancel_pending is set."""
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
            if cancel_pending:
                for job_id, job in self._jobs.items():
                    if not job.status.is_terminal:
                        self._cancel[job_id].set()
            workers = list(self._workers)
        for _ in workers:
            self._queue.put(_STOP)
        if wait:
            for t in workers:
                t.join(timeout=timeout)
        logger.info("Job scheduler stopped")

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.shutdown()
        return False

    # --- Submission ---
    def submit(self, input_path: Union[str, Path], options: Optional[ProcessingOptions] = None) -> str:
        """
        Queue a local file for conversion and return its job id.
        Options are validated and snapshotted here, before any worker sees the job.
        """
        return self._enqueue(Path(input_path), options, from_storage=False)

    def submit_stored(self, key: str, options: Optional[ProcessingOptions] = None) -> str:
        """Queue a file that already lives in storage, addressed by its key."""
        return self._enqueue(Path(BaseStorageProvider.normalize_key(key)), options, from_storage=True)

    def submit_batch(self, input_paths: Iterable[Union[str, Path]],
                     options: Optional[ProcessingOptions] = None) -> List[str]:
        return [self.submit(p, options) for p in input_paths]

    def _enqueue(self, input_path: Path, options: Optional[ProcessingOptions], from_storage: bool) -> str:
        snapshot = copy.deepcopy(options if options is not None else self.config.default_options)
        snapshot.validate()
        provider = get_storage_provider(snapshot.storage, io=self.io) if snapshot.storage is not None else None

        job_id = uuid.uuid4().hex
        job = Job(id=job_id, input_path=input_path, options=snapshot, from_storage=from_storage)
        job.history.append((JobStatus.QUEUED, job.submitted_at))
        with self._lock:
            if self._stopped:
                raise DocRenderError("Scheduler is shut down, no new jobs are accepted")
            self._jobs[job_id] = job
            self._cancel[job_id] = threading.Event()
            self._done[job_id] = threading.Event()
            if provider is not None:
                self._providers[job_id] = provider
        self._queue.put(job_id)
        logger.info("Queued job %s for %s", job_id, input_path.name)
        return job_id

    # --- Queries and control ---
    def get_job(self, job_id: str) -> Optional[Job]:
        """Snapshot copy of a job; the live record is never handed out."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            return replace(job, history=list(job.history))

    def get_result(self, job_id: str) -> Optional[ProcessingResult]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.result if job else None

    def list_jobs(self, status: Optional[JobStatus] = None) -> List[Job]:
        with self._lock:
            jobs = [replace(j, history=list(j.history)) for j in self._jobs.values()]
        if status is not None:
            jobs = [j for j in jobs if j.status == status]
        return sorted(jobs, key=lambda j: j.submitted_at)

    def cancel(self, job_id: str) -> bool:
        """
        Request cooperative cancellation. The worker notices at the next page or
        stage boundary. Returns False for unknown or already finished jobs.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status.is_terminal:
                return False
            self._cancel[job_id].set()
        logger.info("Cancellation requested for job %s", job_id)
        return True

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Optional[Job]:
        with self._lock:
            done = self._done.get(job_id)
        if done is None:
            raise KeyError(f"Unknown job: {job_id}")
        done.wait(timeout)
        return self.get_job(job_id)

    def subscribe(self, job_id: str) -> Subscription:
        """
        Ordered progress stream of one job, replaying what was already published.
        The stream ends after the terminal report, even when the job finished long
        enough ago for its history to be evicted.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise KeyError(f"Unknown job: {job_id}")
            terminal = self._terminal_report(job) if self._done[job_id].is_set() else None
        return self.broadcaster.subscribe(job_id, terminal=terminal)

    @staticmethod
    def _terminal_report(job: Job) -> ProgressReport:
        completed = job.status == JobStatus.COMPLETED
        return ProgressReport(
            job_id=job.id,
            file_name=job.input_path.name,
            status=ProgressStatus.COMPLETED if completed else ProgressStatus.FAILED,
            progress_percentage=100.0 if completed else 0.0,
            message=job.result.message if job.result else "",
            error_message=job.error_message,
            timestamp=job.completed_at or utcnow(),
        )

    # --- Worker side ---
    def _worker_loop(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._run_job(item)
            except Exception:
                # _run_job already finalizes jobs, this only guards the loop itself
                logger.exception("Worker crashed while handling job %s", item)
            finally:
                self._queue.task_done()

    def _transition(self, job: Job, status: JobStatus) -> None:
        now = utcnow()
        job.status = status
        job.history.append((status, now))
        if status == JobStatus.RUNNING:
            job.started_at = now
        elif status.is_terminal:
            job.completed_at = now

    def _run_job(self, job_id: str) -> None:
        with self._lock:
            job = self._jobs[job_id]
            cancel_event = self._cancel[job_id]
            provider = self._providers.get(job_id, self.storage)
            self._transition(job, JobStatus.RUNNING)
            options: ProcessingOptions = job.options
            input_path = job.input_path
            from_storage = job.from_storage

        reporter = ProgressReporter(self.broadcaster, job_id, input_path.name)
        work_dir = job_temp_dir(self.temp_dir, job_id)
        logger.info("Job %s started on %s", job_id, threading.current_thread().name)

        result: Optional[ProcessingResult] = None
        cancelled = False
        try:
            if from_storage:
                with provider.open_local(str(input_path)) as local_path:
                    result = self.engine.process(
                        local_path, options, job_id=job_id, reporter=reporter,
                        cancel_event=cancel_event, storage=provider, work_dir=work_dir,
                    )
            else:
                result = self.engine.process(
                    input_path, options, job_id=job_id, reporter=reporter,
                    cancel_event=cancel_event, storage=provider, work_dir=work_dir,
                )
        except JobCancelledError as e:
            cancelled = True
            result = ProcessingResult.failed(f"Job cancelled: {e}", e)
        except Exception as e:
            logger.exception("Job %s failed outside the conversion engine", job_id)
            result = ProcessingResult.failed(f"Job failed: {e}", e)
        finally:
            result = self._finalize(job_id, result, cancelled)
            self.cleanup_job_files(job_id)
            self._publish_terminal(job_id, result, cancelled, reporter)
            with self._lock:
                self._done[job_id].set()

    def _finalize(self, job_id: str, result: Optional[ProcessingResult], cancelled: bool) -> ProcessingResult:
        if result is None:
            result = ProcessingResult.failed("Job ended without a result")
        with self._lock:
            job = self._jobs[job_id]
            job.result = result
            job.cancelled = cancelled
            if result.success:
                self._transition(job, JobStatus.COMPLETED)
            else:
                job.error_message = result.message
                self._transition(job, JobStatus.FAILED)
            self._providers.pop(job_id, None)
        return result

    def _publish_terminal(self, job_id: str, result: ProcessingResult, cancelled: bool,
                          reporter: ProgressReporter) -> None:
        # The job record is final and its scratch files are gone by the time this runs.
        if result.success:
            reporter.report(ProgressStatus.COMPLETED, result.message)
            logger.info("Job %s completed, %s", job_id, result.message)
        else:
            reporter.report(ProgressStatus.FAILED, result.message, error_message=result.message)
            if cancelled:
                logger.info("Job %s cancelled", job_id)
            else:
                logger.error("Job %s failed, %s", job_id, result.message)

    def cleanup_job_files(self, job_id: str) -> int:
        """
        Remove scratch directories of a job in both the current and the legacy
        layout. Failures are logged, never raised. Returns how many were removed.
        """
        removed = 0
        candidates = [job_temp_dir(self.temp_dir, job_id)] + legacy_job_temp_dirs(self.temp_dir, job_id)
        for path in candidates:
            if not path.exists():
                continue
            if self.io.delete_with_retry(path):
                removed += 1
                logger.debug("Removed temp directory %s", path)
            else:
                logger.warning("Temp directory %s for job %s was left behind", path, job_id)
        return removed
