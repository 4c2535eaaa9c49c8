"""
Cooperative cancellation and worker-pool sizing.
"""

import os
import threading
from typing import Optional

from .errors import OperationCancelled


class CancellationToken:
    """Thread-safe flag checked between units of work."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, what: str = "operation", partial=None) -> None:
        if self._event.is_set():
            raise OperationCancelled(f"{what} cancelled", partial=partial)


def default_worker_count(configured: Optional[int] = None) -> int:
    """Worker count for CPU-bound fan-out; defaults to available cores."""
    if configured:
        return max(1, int(configured))
    return os.cpu_count() or 1
