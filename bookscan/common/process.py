"""
Tracking of external processes spawned on behalf of a single job execution.
"""

import subprocess
import threading
import time
from typing import Optional, Set

import structlog

from .errors import JobTimeoutError

logger = structlog.get_logger(__name__)


class ProcessGuard:
    """
    Deadline and kill switch for the blocking work of one job attempt.

    The worker owns the guard; extraction components register every
    decoder process they start and call ``check()`` between steps. When the
    worker gives up on an attempt it calls ``cancel()``, which kills every
    registered process so no worker slot stays occupied by a stuck decoder.
    """

    def __init__(self, timeout_seconds: Optional[float] = None):
        self._deadline = (
            time.monotonic() + timeout_seconds if timeout_seconds else None
        )
        self._processes: Set[subprocess.Popen] = set()
        self._lock = threading.Lock()
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def remaining(self, default: Optional[float] = None) -> Optional[float]:
        """Seconds left before the deadline, or ``default`` when unbounded."""
        if self._deadline is None:
            return default
        return max(0.0, self._deadline - time.monotonic())

    def register(self, process: subprocess.Popen) -> None:
        with self._lock:
            if self._cancelled:
                _kill(process)
                return
            self._processes.add(process)

    def unregister(self, process: subprocess.Popen) -> None:
        with self._lock:
            self._processes.discard(process)

    def check(self) -> None:
        """Raise if the attempt was cancelled or its deadline has passed."""
        if self._cancelled:
            raise JobTimeoutError("Job execution cancelled after timeout")
        if self._deadline is not None and time.monotonic() >= self._deadline:
            raise JobTimeoutError("Job execution exceeded its time limit")

    def cancel(self) -> None:
        """Kill every registered process and refuse new ones."""
        with self._lock:
            self._cancelled = True
            processes = list(self._processes)
            self._processes.clear()

        for process in processes:
            _kill(process)

        if processes:
            logger.warning("Killed external processes", count=len(processes))


def _kill(process: subprocess.Popen) -> None:
    if process.poll() is None:
        process.kill()
