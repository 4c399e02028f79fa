"""FastAPI job service for SeamLoop analysis and rendering."""
from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Dict, List, Optional, TypeVar
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import FileResponse

try:
    from . import __version__
except Exception:  # pragma: no cover - fallback for partial installs
    __version__ = "0.0.0+unknown"

from .config import (
    ANALYSIS_FPS,
    ANALYSIS_WIDTH,
    ENGINE_TIMEOUT_SEC,
    HEATMAP_BUCKETS,
    JOB_TIMEOUT_MS,
    LOG_DIR,
    MAX_LOG_BYTES,
    MAX_LOG_FILES,
    MAX_RENDER_BYTES,
    MAX_RENDER_FILES,
    MAX_TRACKED_JOBS,
    PRUNE_THRESHOLD,
    RENDER_DIR,
    SEARCH_WORKERS,
    TOP_K,
    ensure_dirs,
)
from .db import get_job, init_db, insert_job, list_jobs, update_job
from .protocol import (
    AnalysisResultNotification,
    CancellationRegistry,
    ErrorNotification,
    NotificationLog,
    ProgressNotification,
    RenderResultNotification,
)
from .rotation import enforce_log_rotation, enforce_render_rotation
from .schemas import (
    AnalysisResultResponse,
    AnalyzeOptions,
    AnalyzeRequest,
    AnalyzeResponse,
    Candidate,
    JobKind,
    JobStatus,
    RenderRequest,
    RenderResponse,
    StatusResponse,
    StopRequest,
)
from src.pipeline import (
    AnalysisError,
    AnalysisOptions,
    AnalysisResult,
    AnalyzerConfig,
    DecodeError,
    EncodeError,
    JobCancelled,
    LoopAnalyzer,
    LoopJobError,
    RankingConfig,
    RenderConfigError,
    SamplerConfig,
    SearchConfig,
)
from src.render import LoopRenderer, RenderPlan, plan_pipeline

REPORT_SCHEMA_VERSION = "1.0"

ensure_dirs()
init_db()

logger = logging.getLogger("seamloop.service")

app = FastAPI(title="SeamLoop Service", version=__version__)

T = TypeVar("T")


@dataclass
class JobState:
    kind: JobKind
    status: JobStatus
    video_path: str
    analysis: Optional[AnalysisResult] = None
    output_path: Optional[Path] = None
    mime_type: Optional[str] = None
    error: Optional[str] = None


_jobs: Dict[str, JobState] = {}
_jobs_lock = asyncio.Lock()
_notifications = NotificationLog(logger)
_cancellations = CancellationRegistry(logger)
_FINISHED = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


def _utcnow() -> str:
    return datetime.utcnow().replace(tzinfo=timezone.utc).isoformat().replace("+00:00", "Z")


def _job_timeout() -> float | None:
    return JOB_TIMEOUT_MS / 1000 if JOB_TIMEOUT_MS > 0 else None


def _create_analyzer(options: AnalyzeOptions | None) -> LoopAnalyzer:
    sampler_cfg = SamplerConfig(analysis_fps=ANALYSIS_FPS, analysis_width=ANALYSIS_WIDTH)
    search_cfg = SearchConfig(prune_threshold=PRUNE_THRESHOLD, workers=max(1, SEARCH_WORKERS))
    ranking_cfg = RankingConfig(top_k=TOP_K, heatmap_buckets=HEATMAP_BUCKETS)

    if options:
        if options.analysis_fps is not None:
            sampler_cfg.analysis_fps = options.analysis_fps
        if options.prune_threshold is not None:
            search_cfg.prune_threshold = options.prune_threshold
        if options.top_k is not None:
            ranking_cfg.top_k = options.top_k

    analyzer_config = AnalyzerConfig(
        sampler=sampler_cfg,
        search=search_cfg,
        ranking=ranking_cfg,
        engine_timeout_sec=ENGINE_TIMEOUT_SEC,
    )
    return LoopAnalyzer(analyzer_config, logger)


def _create_renderer() -> LoopRenderer:
    return LoopRenderer(engine_timeout_sec=ENGINE_TIMEOUT_SEC, logger=logger)


def _progress_publisher(job_id: str):
    def publish(percent: float, message: str) -> None:
        _notifications.publish(ProgressNotification(job_id=job_id, percent=percent, message=message))

    return publish


async def _with_timeout(job: Awaitable[T]) -> T:
    timeout = _job_timeout()
    if timeout:
        return await asyncio.wait_for(job, timeout=timeout)
    return await job


@app.get("/health")
def health():
    return {"status": "ok", "service": "seamloop", "version": __version__}


async def _register_job(job_id: str, kind: JobKind, video_path: str) -> None:
    async with _jobs_lock:
        if job_id in _jobs:
            raise HTTPException(status_code=409, detail=f"Job {job_id} already exists")
        _jobs[job_id] = JobState(kind=kind, status=JobStatus.PENDING, video_path=video_path)
    insert_job(
        {
            "id": job_id,
            "kind": kind.value,
            "created_at": _utcnow(),
            "status": JobStatus.PENDING.value,
            "video_path": video_path,
        }
    )
    _notifications.open(job_id)


async def _set_status(job_id: str, status: JobStatus, **fields: Any) -> None:
    async with _jobs_lock:
        state = _jobs[job_id]
        state.status = status
        if "error" in fields:
            state.error = fields["error"]
    if status in _FINISHED:
        fields.setdefault("finished_at", _utcnow())
    update_job(job_id, status=status.value, **fields)
    if status in _FINISHED:
        await _evict_finished_jobs(keep=job_id)


async def _evict_finished_jobs(keep: str | None = None) -> List[str]:
    """Drop the oldest finished jobs beyond ``MAX_TRACKED_JOBS`` from memory."""
    if MAX_TRACKED_JOBS <= 0:
        return []
    async with _jobs_lock:
        excess = len(_jobs) - MAX_TRACKED_JOBS
        if excess <= 0:
            return []
        victims = [
            job_id for job_id, state in _jobs.items() if state.status in _FINISHED and job_id != keep
        ][:excess]
        for job_id in victims:
            del _jobs[job_id]
    for job_id in victims:
        _notifications.discard(job_id)
    logger.debug("Evicted %d finished jobs from memory", len(victims))
    return victims


async def _forget_rotated_outputs(removed: List[Path]) -> None:
    if not removed:
        return
    gone = set(removed)
    async with _jobs_lock:
        victims = [job_id for job_id, state in _jobs.items() if state.output_path in gone]
        for job_id in victims:
            del _jobs[job_id]
    for job_id in victims:
        _notifications.discard(job_id)


async def _fail_job(job_id: str, error: Exception, started: float) -> None:
    error_type = getattr(error, "error_type", type(error).__name__)
    status = JobStatus.CANCELLED if isinstance(error, JobCancelled) else JobStatus.FAILED
    message = str(error) or error_type
    _notifications.publish(ErrorNotification(job_id=job_id, error_type=error_type, message=message))
    await _set_status(job_id, status, error=message)
    logger.error("Job %s %s after %.2fs: %s", job_id, status.value, time.perf_counter() - started, message)


def _http_status_for(error: Exception, default: int) -> int:
    if isinstance(error, JobCancelled):
        return 409
    if isinstance(error, (DecodeError, AnalysisError)):
        return 422
    if isinstance(error, RenderConfigError):
        return 400
    if isinstance(error, EncodeError):
        return 502
    if isinstance(error, asyncio.TimeoutError):
        return 504
    return default


def _write_report(job_id: str, payload: AnalyzeRequest, analysis: AnalysisResult) -> Optional[Path]:
    report = {
        "job_id": job_id,
        "schema_version": REPORT_SCHEMA_VERSION,
        "service_version": __version__,
        "video_path": payload.video_path,
        "options": payload.options.model_dump(),
        "duration_ms": analysis.duration_ms,
        "video_dimensions": list(analysis.video_dimensions),
        "frame_interval_ms": analysis.frame_interval_ms,
        "summary": analysis.summary,
        "candidates": [candidate.to_dict() for candidate in analysis.candidates],
        "heatmap": analysis.heatmap,
    }
    json_path = LOG_DIR / f"{job_id}.json"
    try:
        json_path.write_text(json.dumps(report, ensure_ascii=False, indent=2), encoding="utf-8")
    except OSError as error:
        logger.warning("Failed to write JSON report for %s: %s", job_id, error)
        return None
    enforce_log_rotation(LOG_DIR, MAX_LOG_FILES, MAX_LOG_BYTES)
    return json_path if json_path.exists() else None


@app.post("/analyze", response_model=AnalyzeResponse)
async def analyze(payload: AnalyzeRequest) -> AnalyzeResponse:
    """Run an analysis job and return once it reaches a terminal state."""

    job_id = payload.job_id or uuid4().hex
    started = time.perf_counter()
    await _register_job(job_id, JobKind.ANALYSIS, payload.video_path)
    token = _cancellations.start(job_id, JobKind.ANALYSIS)
    await _set_status(job_id, JobStatus.RUNNING)

    options = AnalysisOptions(
        min_loop_ms=payload.options.min_loop_ms,
        max_loop_ms=payload.options.max_loop_ms,
        analysis_fps=payload.options.analysis_fps or ANALYSIS_FPS,
    )
    analyzer = _create_analyzer(payload.options)
    try:
        analysis = await _with_timeout(
            asyncio.to_thread(
                analyzer.analyze,
                payload.video_path,
                payload.duration_ms,
                options,
                _progress_publisher(job_id),
                token,
            )
        )
    except asyncio.TimeoutError as error:
        token.cancel("Job timed out")
        timeout_error = AnalysisError(f"Analysis exceeded {JOB_TIMEOUT_MS}ms")
        await _fail_job(job_id, timeout_error, started)
        raise HTTPException(status_code=504, detail=str(timeout_error)) from error
    except LoopJobError as error:
        await _fail_job(job_id, error, started)
        raise HTTPException(status_code=_http_status_for(error, 500), detail=str(error)) from error
    except Exception as error:
        await _fail_job(job_id, error, started)
        raise HTTPException(status_code=500, detail="Analysis failed") from error
    finally:
        _cancellations.finish(job_id)

    async with _jobs_lock:
        _jobs[job_id].analysis = analysis

    report_path = _write_report(job_id, payload, analysis)
    _notifications.publish(
        AnalysisResultNotification(
            job_id=job_id,
            candidates=[Candidate.from_candidate(candidate) for candidate in analysis.candidates],
            heatmap=analysis.heatmap,
            duration_ms=analysis.duration_ms,
            video_dimensions=analysis.video_dimensions,
            frame_interval_ms=analysis.frame_interval_ms,
        )
    )
    await _set_status(
        job_id,
        JobStatus.COMPLETED,
        candidates=len(analysis.candidates),
        report_path=str(report_path) if report_path else None,
    )
    logger.info(
        "Job %s completed in %.2fs (candidates=%d, frames=%s)",
        job_id,
        time.perf_counter() - started,
        len(analysis.candidates),
        analysis.summary.get("frames"),
    )
    return AnalyzeResponse(job_id=job_id, status=JobStatus.COMPLETED, candidates=len(analysis.candidates))


async def _inherited_resolution(payload: RenderRequest):
    if payload.plan.target_resolution is not None or not payload.analysis_job_id:
        return payload.plan.target_resolution
    async with _jobs_lock:
        source = _jobs.get(payload.analysis_job_id)
    if source is None or source.analysis is None:
        raise HTTPException(status_code=404, detail="Unknown analysis job id")
    return source.analysis.video_dimensions


@app.post("/render", response_model=RenderResponse)
async def render(payload: RenderRequest) -> RenderResponse:
    """Render a chosen candidate with the requested seam strategy."""

    job_id = payload.job_id or uuid4().hex
    started = time.perf_counter()
    target_resolution = await _inherited_resolution(payload)
    await _register_job(job_id, JobKind.RENDER, payload.video_path)

    try:
        plan = RenderPlan.create(
            mode=payload.plan.mode,
            candidate=payload.plan.candidate.to_candidate(),
            output_format=payload.plan.output_format,
            crossfade_ms=payload.plan.crossfade_ms,
            target_resolution=target_resolution,
        )
        plan_pipeline(plan)
    except RenderConfigError as error:
        await _fail_job(job_id, error, started)
        raise HTTPException(status_code=400, detail=str(error)) from error

    token = _cancellations.start(job_id, JobKind.RENDER)
    await _set_status(job_id, JobStatus.RUNNING)
    renderer = _create_renderer()
    try:
        output = await _with_timeout(
            asyncio.to_thread(renderer.render, payload.video_path, plan, _progress_publisher(job_id), token)
        )
    except asyncio.TimeoutError as error:
        token.cancel("Job timed out")
        timeout_error = EncodeError(f"Render exceeded {JOB_TIMEOUT_MS}ms")
        await _fail_job(job_id, timeout_error, started)
        raise HTTPException(status_code=504, detail=str(timeout_error)) from error
    except LoopJobError as error:
        await _fail_job(job_id, error, started)
        raise HTTPException(status_code=_http_status_for(error, 500), detail=str(error)) from error
    except Exception as error:
        await _fail_job(job_id, error, started)
        raise HTTPException(status_code=500, detail="Render failed") from error
    finally:
        _cancellations.finish(job_id)

    output_path = RENDER_DIR / f"{job_id}.{plan.output_format.value}"
    try:
        output_path.write_bytes(output.buffer)
    except OSError as error:
        await _fail_job(job_id, EncodeError(f"Failed to store render output: {error}"), started)
        raise HTTPException(status_code=500, detail="Failed to store render output") from error
    await _forget_rotated_outputs(enforce_render_rotation(RENDER_DIR, MAX_RENDER_FILES, MAX_RENDER_BYTES))

    async with _jobs_lock:
        state = _jobs[job_id]
        state.output_path = output_path
        state.mime_type = output.mime_type

    output_url = f"/render/{job_id}/output"
    _notifications.publish(
        RenderResultNotification(
            job_id=job_id,
            mime_type=output.mime_type,
            size_bytes=len(output.buffer),
            duration_ms=output.duration_ms,
            output_url=output_url,
        )
    )
    await _set_status(
        job_id,
        JobStatus.COMPLETED,
        output_path=str(output_path),
        mime_type=output.mime_type,
    )
    logger.info(
        "Job %s rendered %s/%s in %.2fs (%d bytes)",
        job_id,
        plan.mode.value,
        plan.output_format.value,
        time.perf_counter() - started,
        len(output.buffer),
    )
    return RenderResponse(
        job_id=job_id,
        status=JobStatus.COMPLETED,
        mime_type=output.mime_type,
        size_bytes=len(output.buffer),
        duration_ms=output.duration_ms,
        output_url=output_url,
    )


async def _get_state(job_id: str) -> JobState:
    async with _jobs_lock:
        state = _jobs.get(job_id)
    if state is None:
        raise HTTPException(status_code=404, detail="Unknown job id")
    return state


@app.get("/status/{job_id}", response_model=StatusResponse)
async def status(job_id: str) -> StatusResponse:
    """Return the current status and latest progress for a job."""

    state = await _get_state(job_id)
    latest = _notifications.latest_progress(job_id)
    percent = latest.percent if latest else 0.0
    if state.status is JobStatus.COMPLETED:
        percent = 100.0
    return StatusResponse(
        job_id=job_id,
        kind=state.kind,
        status=state.status,
        percent=percent,
        message=latest.message if latest else None,
        detail=state.error,
    )


@app.get("/result/{job_id}", response_model=AnalysisResultResponse)
async def result(job_id: str) -> AnalysisResultResponse:
    """Return the ranked candidates of a finished analysis job."""

    state = await _get_state(job_id)
    if state.kind is not JobKind.ANALYSIS:
        raise HTTPException(status_code=404, detail="Unknown analysis job id")
    analysis = state.analysis
    if analysis is None:
        raise HTTPException(status_code=409, detail=f"Job {job_id} is {state.status.value}")
    return AnalysisResultResponse(
        job_id=job_id,
        status=state.status,
        candidates=[Candidate.from_candidate(candidate) for candidate in analysis.candidates],
        heatmap=analysis.heatmap,
        duration_ms=analysis.duration_ms,
        video_dimensions=analysis.video_dimensions,
        frame_interval_ms=analysis.frame_interval_ms,
        summary=analysis.summary,
    )


@app.get("/render/{job_id}/output")
async def render_output(job_id: str):
    state = await _get_state(job_id)
    if state.kind is not JobKind.RENDER:
        raise HTTPException(status_code=404, detail="Unknown render job id")
    if state.output_path is None:
        raise HTTPException(status_code=409, detail=f"Job {job_id} is {state.status.value}")
    if not state.output_path.exists():
        raise HTTPException(status_code=410, detail="Render output was rotated away")
    return FileResponse(state.output_path, media_type=state.mime_type, filename=state.output_path.name)


@app.get("/jobs/{job_id}/notifications")
async def notifications(job_id: str):
    if job_id not in _notifications:
        raise HTTPException(status_code=404, detail="Unknown job id")
    return [entry.model_dump() for entry in _notifications.history(job_id)]


@app.get("/jobs")
def jobs(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    kind: Optional[JobKind] = Query(None),
):
    return list_jobs(limit=limit, offset=offset, kind=kind.value if kind else None)


@app.get("/jobs/{job_id}")
def job_detail(job_id: str):
    record = get_job(job_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Unknown job id")
    return record


@app.post("/jobs/{job_id}/stop")
async def stop_job(job_id: str, payload: StopRequest | None = None):
    await _get_state(job_id)
    reason = payload.reason if payload else None
    requested = _cancellations.cancel(job_id, reason)
    if requested:
        logger.info("Cancellation requested for job %s", job_id)
    return {"job_id": job_id, "cancel_requested": requested}
