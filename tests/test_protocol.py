from __future__ import annotations

import dataclasses
from typing import Optional

import pytest
from pydantic import BaseModel

from src.pipeline.errors import JobCancelled
from src.service import protocol
from src.service.protocol import (
    NOTIFICATION_TYPES,
    AnalysisResultNotification,
    CancellationRegistry,
    ErrorNotification,
    JobBoundary,
    NotificationHandlers,
    NotificationLog,
    ProgressNotification,
    RenderResultNotification,
    handle_notification,
    parse_notification,
)
from src.service.schemas import JobKind


def _analysis_result(job_id: str) -> AnalysisResultNotification:
    return AnalysisResultNotification(
        job_id=job_id,
        candidates=[],
        heatmap=[0.05] * 100,
        duration_ms=10000,
        video_dimensions=(640, 360),
        frame_interval_ms=1000 / 12,
    )


def _samples(job_id: str):
    return {
        ProgressNotification: ProgressNotification(job_id=job_id, percent=10, message="Analyzing frames..."),
        AnalysisResultNotification: _analysis_result(job_id),
        RenderResultNotification: RenderResultNotification(
            job_id=job_id,
            mime_type="image/gif",
            size_bytes=3,
            duration_ms=4000,
            output_url=f"/render/{job_id}/output",
        ),
        ErrorNotification: ErrorNotification(job_id=job_id, error_type="DecodeError", message="bad file"),
    }


class _Recorder:
    def __init__(self) -> None:
        self.seen = []
        self.handlers = NotificationHandlers(
            on_progress=lambda n: self.seen.append(("progress", n)),
            on_analysis_result=lambda n: self.seen.append(("analysis_result", n)),
            on_render_result=lambda n: self.seen.append(("render_result", n)),
            on_error=lambda n: self.seen.append(("error", n)),
        )


def test_progress_is_non_decreasing() -> None:
    log = NotificationLog()
    log.open("job-a")
    for percent in (5, 25, 20, 60):
        assert log.publish(ProgressNotification(job_id="job-a", percent=percent))

    assert [entry.percent for entry in log.history("job-a")] == [5, 25, 25, 60]
    assert log.latest_progress("job-a").percent == 60


def test_single_terminal_then_silence() -> None:
    log = NotificationLog()
    log.open("job-a")
    log.publish(ProgressNotification(job_id="job-a", percent=50))
    assert log.publish(_analysis_result("job-a"))

    assert not log.publish(ProgressNotification(job_id="job-a", percent=99))
    assert not log.publish(ErrorNotification(job_id="job-a", error_type="AnalysisError", message="late"))
    history = log.history("job-a")
    assert len(history) == 2
    assert isinstance(log.terminal("job-a"), AnalysisResultNotification)


def test_jobs_are_tracked_independently() -> None:
    log = NotificationLog()
    log.publish(ErrorNotification(job_id="job-a", error_type="JobCancelled", message="superseded"))
    assert log.publish(ProgressNotification(job_id="job-b", percent=10))

    assert "job-a" in log and "job-b" in log
    assert log.terminal("job-b") is None
    with pytest.raises(KeyError):
        log.history("job-c")


def test_log_requires_job_id() -> None:
    with pytest.raises(ValueError):
        NotificationLog().publish(ProgressNotification(percent=1))


def test_boundary_suppresses_stale_results() -> None:
    boundary = JobBoundary()
    recorder = _Recorder()
    boundary.begin("job-a")
    boundary.begin("job-b")

    assert not boundary.dispatch(_analysis_result("job-a"), recorder.handlers)
    assert boundary.dispatch(_analysis_result("job-b"), recorder.handlers)
    assert boundary.dispatch(ProgressNotification(percent=5), recorder.handlers)
    assert [kind for kind, _ in recorder.seen] == ["analysis_result", "progress"]
    assert recorder.seen[0][1].job_id == "job-b"


def test_boundary_accepts_everything_before_begin() -> None:
    boundary = JobBoundary()
    assert boundary.accept(ProgressNotification(job_id="anything", percent=0))


def test_dispatch_covers_every_variant() -> None:
    recorder = _Recorder()
    samples = _samples("job-a")

    assert set(samples) == set(NOTIFICATION_TYPES)
    for notification_type in NOTIFICATION_TYPES:
        handle_notification(samples[notification_type], recorder.handlers)

    assert [kind for kind, _ in recorder.seen] == ["progress", "analysis_result", "render_result", "error"]


def test_dispatch_rejects_unknown_variant() -> None:
    class StrayNotification(BaseModel):
        type: str = "stray"
        job_id: Optional[str] = None

    with pytest.raises(TypeError):
        handle_notification(StrayNotification(), _Recorder().handlers)


def test_parse_notification_discriminates_on_type() -> None:
    for notification in _samples("job-a").values():
        parsed = parse_notification(notification.model_dump())
        assert type(parsed) is type(notification)
        assert parsed == notification


def test_starting_analysis_supersedes_previous() -> None:
    registry = CancellationRegistry()
    first = registry.start("job-a", JobKind.ANALYSIS)
    render = registry.start("render-1", JobKind.RENDER)
    second = registry.start("job-b", JobKind.ANALYSIS)

    assert first.cancelled
    assert "job-b" in (first.reason or "")
    assert not render.cancelled
    assert not second.cancelled
    assert registry.current_analysis == "job-b"
    with pytest.raises(JobCancelled):
        first.raise_if_cancelled()


def test_cancel_and_finish() -> None:
    registry = CancellationRegistry()
    token = registry.start("render-1", JobKind.RENDER)

    assert registry.cancel("render-1", "stop button")
    assert token.reason == "stop button"
    registry.finish("render-1")
    assert not registry.is_running("render-1")
    assert not registry.cancel("render-1")


def test_every_variant_maps_to_a_handler_field() -> None:
    handler_fields = {field.name for field in dataclasses.fields(NotificationHandlers)}

    assert set(protocol._HANDLER_NAMES) == set(NOTIFICATION_TYPES)
    assert set(protocol._HANDLER_NAMES.values()) == handler_fields
