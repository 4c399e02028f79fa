"""Cooperative cancellation for long-running jobs."""
from __future__ import annotations

import threading
from typing import Optional

from .errors import JobCancelled


class CancellationToken:
    """Thread-safe flag polled by jobs at their progress checkpoints."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self._reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelled(self._reason or "Job cancelled")


__all__ = ["CancellationToken"]
