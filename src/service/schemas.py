"""Pydantic models for the SeamLoop job service."""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from src.pipeline.types import CandidateSubscores, LoopCandidate
from src.render.planner import OutputFormat, RenderMode


class JobStatus(str, Enum):
    """Lifecycle states for analysis and render jobs."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobKind(str, Enum):
    ANALYSIS = "analysis"
    RENDER = "render"


class AnalyzeOptions(BaseModel):
    min_loop_ms: float = Field(1500.0, gt=0, description="Shortest acceptable loop in milliseconds")
    max_loop_ms: float = Field(8000.0, gt=0, description="Longest acceptable loop in milliseconds")
    analysis_fps: Optional[int] = Field(None, ge=1, le=60, description="Sampling rate used for analysis")
    prune_threshold: Optional[float] = Field(None, ge=0.0, le=1.0, description="Minimum score for a pair to be kept")
    top_k: Optional[int] = Field(None, ge=1, le=100, description="Number of ranked candidates returned")


class AnalyzeRequest(BaseModel):
    """Payload for starting an analysis job."""

    video_path: str = Field(..., description="Path of the source video as seen by the service")
    duration_ms: Optional[float] = Field(None, ge=0, description="Source duration; probed when omitted")
    options: AnalyzeOptions = Field(default_factory=AnalyzeOptions)
    job_id: Optional[str] = Field(None, description="Caller-assigned job identifier")


class Subscores(BaseModel):
    ssim: float = Field(..., ge=0.0, le=1.0)
    hist_similarity: float = Field(..., ge=0.0, le=1.0)
    flow_error: float = Field(..., ge=0.0)


class Candidate(BaseModel):
    start_ms: float = Field(..., ge=0)
    end_ms: float = Field(..., ge=0)
    score: float = Field(..., ge=0.0, le=1.0)
    subscores: Subscores
    start_frame: Optional[int] = None
    end_frame: Optional[int] = None

    @classmethod
    def from_candidate(cls, candidate: LoopCandidate) -> "Candidate":
        return cls(**candidate.to_dict())

    def to_candidate(self) -> LoopCandidate:
        return LoopCandidate(
            start_ms=self.start_ms,
            end_ms=self.end_ms,
            score=self.score,
            subscores=CandidateSubscores(
                ssim=self.subscores.ssim,
                hist_similarity=self.subscores.hist_similarity,
                flow_error=self.subscores.flow_error,
            ),
            start_frame=self.start_frame,
            end_frame=self.end_frame,
        )


class RenderPlanOptions(BaseModel):
    mode: RenderMode = Field(RenderMode.CUT, description="Seam strategy: cut|crossfade|ping_pong|flow_morph")
    candidate: Candidate
    crossfade_ms: float = Field(0.0, ge=0, description="Transition length for crossfade and flow_morph")
    output_format: OutputFormat = Field(OutputFormat.MP4, description="mp4|webm|gif")
    target_resolution: Optional[Tuple[int, int]] = Field(None, description="Output width and height")


class RenderRequest(BaseModel):
    """Payload for starting a render job."""

    video_path: str
    plan: RenderPlanOptions
    analysis_job_id: Optional[str] = Field(
        None,
        description="Analysis job whose detected dimensions become the output resolution",
    )
    job_id: Optional[str] = Field(None, description="Caller-assigned job identifier")


class AnalyzeResponse(BaseModel):
    job_id: str
    status: JobStatus
    candidates: int = 0


class RenderResponse(BaseModel):
    job_id: str
    status: JobStatus
    mime_type: str
    size_bytes: int
    duration_ms: float
    output_url: str


class StatusResponse(BaseModel):
    job_id: str
    kind: JobKind
    status: JobStatus
    percent: float = 0.0
    message: Optional[str] = None
    detail: Optional[str] = None


class AnalysisResultResponse(BaseModel):
    job_id: str
    status: JobStatus
    candidates: List[Candidate] = Field(default_factory=list)
    heatmap: List[float] = Field(default_factory=list)
    duration_ms: float
    video_dimensions: Tuple[int, int]
    frame_interval_ms: float
    summary: Dict[str, Any] = Field(default_factory=dict)


class StopRequest(BaseModel):
    reason: Optional[str] = None
