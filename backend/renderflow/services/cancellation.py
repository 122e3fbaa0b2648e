"""Cooperative cancellation flags for active runs."""

import threading
from typing import Dict


class CancellationRegistry:
    """Thread-safe map of run id to "still active" flag.

    A run is activated when the executor picks it up; cancel() flips its
    flag so the executor stops at its next checked boundary. Unknown run ids
    read as inactive.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._active: Dict[str, bool] = {}

    def activate(self, run_id: str) -> bool:
        """Mark a run active unless a cancel is already pending for it.

        Returns:
            The resulting flag.
        """
        with self._lock:
            return self._active.setdefault(run_id, True)

    def cancel(self, run_id: str) -> None:
        with self._lock:
            self._active[run_id] = False

    def is_active(self, run_id: str) -> bool:
        with self._lock:
            return self._active.get(run_id, False)

    def discard(self, run_id: str) -> None:
        with self._lock:
            self._active.pop(run_id, None)

    def __contains__(self, run_id: str) -> bool:
        with self._lock:
            return run_id in self._active
