# src/docrender/progress.py
"""
In-process pub/sub for per-job progress reports.

Publishing never blocks: every subscriber owns an unbounded queue and a
subscriber that stopped reading only costs memory until it is closed.
"""
from __future__ import annotations

import logging
import threading
from collections import OrderedDict, deque
from queue import Empty, Queue
from typing import Deque, Dict, Iterator, List, Optional

from .logger import PROGRESS
from .models import ProgressReport, ProgressStatus

logger = logging.getLogger("docrender")

_CLOSED = object()


class Subscription:
    """Ordered stream of reports for one job (or all jobs when job_id is None)."""

    def __init__(self, broadcaster: "ProgressBroadcaster", job_id: Optional[str]):
        self.job_id = job_id
        self._broadcaster = broadcaster
        self._q: Queue = Queue()
        self.closed = False
        self._finished = False

    def _deliver(self, report: ProgressReport) -> None:
        if self.closed or self._finished:
            return
        self._q.put_nowait(report)
        if self.job_id is not None and report.status.is_terminal:
            self._finished = True
            self._q.put_nowait(_CLOSED)

    def get(self, timeout: Optional[float] = None) -> Optional[ProgressReport]:
        """Next report, or None once the stream has closed. Raises queue.Empty on timeout."""
        if self.closed and self._q.empty():
            return None
        item = self._q.get(timeout=timeout)
        if item is _CLOSED:
            self.close()
            return None
        return item

    def __iter__(self) -> Iterator[ProgressReport]:
        while True:
            item = self.get()
            if item is None:
                return
            yield item

    def drain(self) -> List[ProgressReport]:
        """Reports already queued, without waiting."""
        out = []
        while True:
            try:
                item = self._q.get_nowait()
            except Empty:
                return out
            if item is _CLOSED:
                self.close()
                return out
            out.append(item)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._broadcaster._unsubscribe(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


class ProgressBroadcaster:
    _MAX_EVENTS_PER_JOB = 4000
    _MAX_TRACKED_JOBS = 1000

    def __init__(self):
        self._lock = threading.Lock()
        self._subs: Dict[Optional[str], List[Subscription]] = {}
        self._history: "OrderedDict[str, Deque[ProgressReport]]" = OrderedDict()

    def publish(self, job_id: str, report: ProgressReport) -> None:
        # One lock around record + fan-out keeps per-job delivery in emission order.
        with self._lock:
            hist = self._history.get(job_id)
            if hist is None:
                hist = deque(maxlen=self._MAX_EVENTS_PER_JOB)
                self._history[job_id] = hist
                while len(self._history) > self._MAX_TRACKED_JOBS:
                    self._history.popitem(last=False)
            hist.append(report)
            targets = list(self._subs.get(job_id, ())) + list(self._subs.get(None, ()))
            for sub in targets:
                try:
                    sub._deliver(report)
                except Exception as e:
                    logger.debug("Dropping progress report for a failed subscriber, %s", e)

        logger.progress(
            "%s %s %s",
            job_id, report.status.value, report.message or report.file_name,
            extra={
                "job_id": job_id,
                "phase": report.status.value,
                "pct": report.progress_percentage,
                "current": report.current_page,
                "total": report.total_pages,
            },
        )

    def subscribe(self, job_id: Optional[str] = None, replay: bool = True,
                  terminal: Optional[ProgressReport] = None) -> Subscription:
        """
        Subscribe to one job's reports (job_id) or to every job (None).
        With replay, reports already published for the job are delivered first.
        `terminal` closes the stream of a finished job whose history was evicted.
        """
        sub = Subscription(self, job_id)
        with self._lock:
            if replay and job_id is not None:
                for report in self._history.get(job_id, ()):
                    sub._deliver(report)
            if terminal is not None and job_id is not None:
                sub._deliver(terminal)
            if sub._finished:
                return sub
            self._subs.setdefault(job_id, []).append(sub)
        return sub

    def history(self, job_id: str) -> List[ProgressReport]:
        with self._lock:
            return list(self._history.get(job_id, ()))

    def forget(self, job_id: str) -> None:
        with self._lock:
            self._history.pop(job_id, None)

    def _unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subs.get(sub.job_id)
            if subs and sub in subs:
                subs.remove(sub)
                if not subs:
                    del self._subs[sub.job_id]


class ProgressReporter:
    """
    Builds ProgressReport values for one job and publishes them.
    Percentages: single file -> page fraction; batch -> (files done + page fraction) / files.
    """

    def __init__(
        self,
        broadcaster: Optional[ProgressBroadcaster],
        job_id: str,
        file_name: str = "",
        current_file: int = 1,
        total_files: int = 1,
    ):
        self.broadcaster = broadcaster
        self.job_id = job_id
        self.file_name = file_name
        self.current_file = current_file
        self.total_files = max(1, total_files)
        self.last: Optional[ProgressReport] = None

    def percentage(self, status: ProgressStatus, current_page: int, total_pages: int) -> float:
        if status == ProgressStatus.COMPLETED:
            file_fraction = 1.0
        elif status in (ProgressStatus.STARTING, ProgressStatus.LOADING_FILE) or total_pages <= 0:
            file_fraction = 0.0
        else:
            file_fraction = current_page / total_pages
        if self.total_files == 1:
            pct = file_fraction * 100.0
        else:
            pct = ((self.current_file - 1) + file_fraction) / self.total_files * 100.0
        return round(min(100.0, max(0.0, pct)), 2)

    def report(
        self,
        status: ProgressStatus,
        message: str = "",
        current_page: int = 0,
        total_pages: int = 0,
        error_message: Optional[str] = None,
    ) -> ProgressReport:
        if status == ProgressStatus.FAILED and self.last is not None:
            pct = self.last.progress_percentage
        else:
            pct = self.percentage(status, current_page, total_pages)
        report = ProgressReport(
            job_id=self.job_id,
            file_name=self.file_name,
            status=status,
            current_file=self.current_file,
            total_files=self.total_files,
            current_page=current_page,
            total_pages=total_pages,
            progress_percentage=pct,
            message=message,
            error_message=error_message,
        )
        self.last = report
        if self.broadcaster is not None:
            self.broadcaster.publish(self.job_id, report)
        return report
