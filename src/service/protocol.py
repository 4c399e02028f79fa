"""Job notification protocol shared by the service and its clients.

Every job produces an ordered stream of notifications keyed by job id:
zero or more progress messages with a non-decreasing percentage followed by
exactly one terminal message (an analysis result, a render result, or an
error). Anything published for a job after its terminal message is dropped.

Clients keep a :class:`JobBoundary` so that messages belonging to a job
they have already moved past are ignored instead of mutating current state.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Annotated, Callable, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field, TypeAdapter

from src.pipeline.cancellation import CancellationToken

from .schemas import Candidate, JobKind

LOGGER = logging.getLogger("seamloop.protocol")


class ProgressNotification(BaseModel):
    type: Literal["progress"] = "progress"
    job_id: Optional[str] = None
    percent: float = Field(..., ge=0.0, le=100.0)
    message: str = ""


class AnalysisResultNotification(BaseModel):
    type: Literal["analysis_result"] = "analysis_result"
    job_id: Optional[str] = None
    candidates: List[Candidate] = Field(default_factory=list)
    heatmap: List[float] = Field(default_factory=list)
    duration_ms: float
    video_dimensions: Tuple[int, int]
    frame_interval_ms: float


class RenderResultNotification(BaseModel):
    type: Literal["render_result"] = "render_result"
    job_id: Optional[str] = None
    mime_type: str
    size_bytes: int
    duration_ms: float
    output_url: str


class ErrorNotification(BaseModel):
    type: Literal["error"] = "error"
    job_id: Optional[str] = None
    error_type: str
    message: str


Notification = Annotated[
    Union[ProgressNotification, AnalysisResultNotification, RenderResultNotification, ErrorNotification],
    Field(discriminator="type"),
]

NOTIFICATION_TYPES = (
    ProgressNotification,
    AnalysisResultNotification,
    RenderResultNotification,
    ErrorNotification,
)
TERMINAL_TYPES = (AnalysisResultNotification, RenderResultNotification, ErrorNotification)

_NOTIFICATION_ADAPTER: TypeAdapter = TypeAdapter(Notification)


def parse_notification(payload: Dict) -> Notification:
    """Validate a raw JSON object into its notification variant."""
    return _NOTIFICATION_ADAPTER.validate_python(payload)


def is_terminal(notification: Notification) -> bool:
    return isinstance(notification, TERMINAL_TYPES)


# ----------------------------------------------------------------------
@dataclass
class NotificationHandlers:
    """One callback per notification variant; all four are required."""

    on_progress: Callable[[ProgressNotification], None]
    on_analysis_result: Callable[[AnalysisResultNotification], None]
    on_render_result: Callable[[RenderResultNotification], None]
    on_error: Callable[[ErrorNotification], None]


_HANDLER_NAMES: Dict[type, str] = {
    ProgressNotification: "on_progress",
    AnalysisResultNotification: "on_analysis_result",
    RenderResultNotification: "on_render_result",
    ErrorNotification: "on_error",
}

if set(_HANDLER_NAMES) != set(NOTIFICATION_TYPES):
    raise TypeError("every notification variant needs a handler")


def handle_notification(notification: Notification, handlers: NotificationHandlers) -> None:
    handler_name = _HANDLER_NAMES.get(type(notification))
    if handler_name is None:
        raise TypeError(f"Unhandled notification type {type(notification).__name__}")
    getattr(handlers, handler_name)(notification)


# ----------------------------------------------------------------------
class NotificationLog:
    """Thread-safe per-job notification history enforcing the ordering rules."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, List[Notification]] = {}
        self._high_water: Dict[str, float] = {}
        self._finished: set = set()
        self._logger = logger or LOGGER

    def open(self, job_id: str) -> None:
        with self._lock:
            self._entries.setdefault(job_id, [])
            self._high_water.setdefault(job_id, 0.0)

    def publish(self, notification: Notification) -> bool:
        """Append ``notification``; returns False when it was dropped."""
        job_id = notification.job_id
        if not job_id:
            raise ValueError("Notifications published to the log need a job id")
        with self._lock:
            if job_id in self._finished:
                self._logger.debug("Dropping %s for finished job %s", notification.type, job_id)
                return False
            entries = self._entries.setdefault(job_id, [])
            if isinstance(notification, ProgressNotification):
                high_water = self._high_water.get(job_id, 0.0)
                if notification.percent < high_water:
                    notification = notification.model_copy(update={"percent": high_water})
                self._high_water[job_id] = notification.percent
            else:
                self._finished.add(job_id)
            entries.append(notification)
            return True

    def history(self, job_id: str) -> List[Notification]:
        with self._lock:
            if job_id not in self._entries:
                raise KeyError(job_id)
            return list(self._entries[job_id])

    def latest_progress(self, job_id: str) -> Optional[ProgressNotification]:
        with self._lock:
            for entry in reversed(self._entries.get(job_id, [])):
                if isinstance(entry, ProgressNotification):
                    return entry
        return None

    def terminal(self, job_id: str) -> Optional[Notification]:
        with self._lock:
            entries = self._entries.get(job_id, [])
            if entries and is_terminal(entries[-1]):
                return entries[-1]
        return None

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._entries

    def discard(self, job_id: str) -> None:
        with self._lock:
            self._entries.pop(job_id, None)
            self._high_water.pop(job_id, None)
            self._finished.discard(job_id)


class JobBoundary:
    """Caller-side filter that only lets the current job's messages through.

    Messages without a job id, or arriving before any job has begun, are
    accepted as-is.
    """

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._current: Optional[str] = None
        self._logger = logger or LOGGER

    @property
    def current_job_id(self) -> Optional[str]:
        return self._current

    def begin(self, job_id: str) -> None:
        if self._current and self._current != job_id:
            self._logger.info("Switching from job %s to %s", self._current, job_id)
        self._current = job_id

    def accept(self, notification: Notification) -> bool:
        if self._current and notification.job_id and notification.job_id != self._current:
            self._logger.warning(
                "Ignoring stale %s for job %s (current %s)",
                notification.type,
                notification.job_id,
                self._current,
            )
            return False
        return True

    def dispatch(self, notification: Notification, handlers: NotificationHandlers) -> bool:
        if not self.accept(notification):
            return False
        handle_notification(notification, handlers)
        return True


class CancellationRegistry:
    """Tracks one cancellation token per running job.

    Starting an analysis supersedes the previous running analysis; render
    jobs run side by side.
    """

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._lock = threading.Lock()
        self._tokens: Dict[str, CancellationToken] = {}
        self._current_analysis: Optional[str] = None
        self._logger = logger or LOGGER

    def start(self, job_id: str, kind: JobKind) -> CancellationToken:
        token = CancellationToken()
        with self._lock:
            if kind is JobKind.ANALYSIS:
                previous = self._current_analysis
                if previous and previous != job_id and previous in self._tokens:
                    self._tokens[previous].cancel(f"Superseded by job {job_id}")
                    self._logger.info("Analysis %s superseded by %s", previous, job_id)
                self._current_analysis = job_id
            self._tokens[job_id] = token
        return token

    def cancel(self, job_id: str, reason: Optional[str] = None) -> bool:
        with self._lock:
            token = self._tokens.get(job_id)
        if token is None:
            return False
        token.cancel(reason or "Cancelled by request")
        return True

    def finish(self, job_id: str) -> None:
        with self._lock:
            self._tokens.pop(job_id, None)
            if self._current_analysis == job_id:
                self._current_analysis = None

    def is_running(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._tokens

    @property
    def current_analysis(self) -> Optional[str]:
        return self._current_analysis


__all__ = [
    "AnalysisResultNotification",
    "CancellationRegistry",
    "ErrorNotification",
    "JobBoundary",
    "NOTIFICATION_TYPES",
    "Notification",
    "NotificationHandlers",
    "NotificationLog",
    "ProgressNotification",
    "RenderResultNotification",
    "TERMINAL_TYPES",
    "handle_notification",
    "is_terminal",
    "parse_notification",
]
