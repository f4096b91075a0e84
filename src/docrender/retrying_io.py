# src/docrender/retrying_io.py
"""
Retry wrapper for single file writes, size reads and deletes.

Native codecs (PyMuPDF, Pillow plugins, antivirus scanners on Windows) can keep a
handle on a freshly written file for a few milliseconds. Those failures are
classified as transient-lock errors and retried on a bounded schedule; every other
error propagates on the first attempt.
"""
from __future__ import annotations

import gc
import logging
import os
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Tuple, TypeVar, Union

logger = logging.getLogger("docrender")

T = TypeVar("T")
PathLike = Union[str, Path]
RetryCallback = Callable[[Path, int, BaseException], Any]

_TRANSIENT_PATTERNS = (
    "being used by another process",
    "cannot access the file",
    "sharing violation",
    "lock",
)
# ERROR_SHARING_VIOLATION, ERROR_LOCK_VIOLATION
_TRANSIENT_WINERRORS = (32, 33)


def is_transient_lock_error(exc: BaseException) -> bool:
    """Pure classifier, never raises. True when the error looks like a foreign file handle."""
    if getattr(exc, "winerror", None) in _TRANSIENT_WINERRORS:
        return True
    msg = str(exc).lower()
    return any(p in msg for p in _TRANSIENT_PATTERNS)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    # delays[k-1] is waited after failed attempt k
    delays: Tuple[float, ...] = ()
    grace_delay: float = 0.0
    release_handles: bool = False

    def delay_after(self, attempt: int) -> float:
        if not self.delays:
            return 0.0
        return self.delays[min(attempt - 1, len(self.delays) - 1)]


WRITE_POLICY = RetryPolicy(max_attempts=3, delays=(0.2, 0.4), grace_delay=0.05, release_handles=True)
SIZE_POLICY = RetryPolicy(max_attempts=5, delays=(0.1, 0.2, 0.3, 0.4, 0.5))
DELETE_POLICY = RetryPolicy(max_attempts=5, delays=(0.1, 0.2, 0.4, 0.8), release_handles=True)


class RetryingIO:
    def __init__(
        self,
        write_policy: RetryPolicy = WRITE_POLICY,
        size_policy: RetryPolicy = SIZE_POLICY,
        delete_policy: RetryPolicy = DELETE_POLICY,
        sleep: Callable[[float], Any] = time.sleep,
    ):
        self.write_policy = write_policy
        self.size_policy = size_policy
        self.delete_policy = delete_policy
        self._sleep = sleep

    def _run(
        self,
        op: Callable[[], T],
        path: Path,
        policy: RetryPolicy,
        label: str,
        on_retry: Optional[RetryCallback] = None,
    ) -> T:
        attempt = 1
        while True:
            logger.debug(
                "%s attempt %d/%d for %s", label, attempt, policy.max_attempts, path,
                extra={"path": str(path), "attempt": attempt},
            )
            try:
                return op()
            except Exception as e:
                if not is_transient_lock_error(e) or attempt >= policy.max_attempts:
                    raise
                delay = policy.delay_after(attempt)
                logger.warning(
                    "Transient file lock during %s of %s (attempt %d/%d), retrying in %d ms: %s",
                    label, path, attempt, policy.max_attempts, int(delay * 1000), e,
                    extra={"path": str(path), "attempt": attempt, "delay_ms": int(delay * 1000)},
                )
                if on_retry is not None:
                    on_retry(path, attempt, e)
                self._sleep(delay)
                if policy.release_handles:
                    gc.collect()
                if policy.grace_delay:
                    self._sleep(policy.grace_delay)
                attempt += 1

    def write_with_retry(
        self,
        writer: Callable[[Path], Any],
        path: PathLike,
        *,
        on_retry: Optional[RetryCallback] = None,
    ) -> None:
        """Call writer(path), retrying transient lock errors. The last error is re-raised as is."""
        p = Path(path)
        self._run(lambda: writer(p), p, self.write_policy, "write", on_retry)

    def read_size_with_retry(self, path: PathLike, *, on_retry: Optional[RetryCallback] = None) -> int:
        p = Path(path)
        return self._run(lambda: os.path.getsize(p), p, self.size_policy, "size check", on_retry)

    def delete_with_retry(self, path: PathLike) -> bool:
        """
        Remove a file or directory tree. Never raises: cleanup must not abort the caller.
        Returns True when the path is gone afterwards.
        """
        p = Path(path)

        def _delete():
            if p.is_dir() and not p.is_symlink():
                shutil.rmtree(p)
            else:
                p.unlink()

        try:
            self._run(_delete, p, self.delete_policy, "delete")
            return True
        except FileNotFoundError:
            return True
        except Exception as e:
            logger.warning("Failed to delete %s, %s", p, e, extra={"path": str(p)})
            return False
