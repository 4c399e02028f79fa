"""Typed primitives for the SeamLoop analysis pipeline."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

import numpy as np

from .errors import AnalysisError


@dataclass(frozen=True)
class VideoInfo:
    """Container facts reported by the transcoding engine."""

    duration_ms: float
    width: int
    height: int
    fps: Optional[float] = None

    @property
    def dimensions(self) -> Tuple[int, int]:
        return self.width, self.height


@dataclass(frozen=True)
class SampledFrame:
    """Per-frame descriptors computed once per analysis job."""

    index: int
    timestamp_ms: float
    luma: np.ndarray
    color_hist: np.ndarray


class FrameFeatureSet:
    """Ordered frame descriptors owned by a single analysis job.

    Acts as the arena for every per-frame buffer of the job: ``release`` drops
    them all at once and the set is unusable afterwards.
    """

    def __init__(self, frames: List[SampledFrame], fps: float) -> None:
        for position, frame in enumerate(frames):
            if frame.index != position:
                raise ValueError(f"Frame indices must be contiguous; got {frame.index} at {position}")
            if position and frame.timestamp_ms <= frames[position - 1].timestamp_ms:
                raise ValueError("Frame timestamps must increase monotonically")
        self._frames: Optional[List[SampledFrame]] = list(frames)
        self.fps = float(fps)

    def __enter__(self) -> "FrameFeatureSet":
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()

    def __len__(self) -> int:
        return len(self._require())

    def __getitem__(self, index: int) -> SampledFrame:
        return self._require()[index]

    def __iter__(self) -> Iterator[SampledFrame]:
        return iter(self._require())

    @property
    def released(self) -> bool:
        return self._frames is None

    def release(self) -> None:
        if self._frames is not None:
            self._frames.clear()
        self._frames = None

    def _require(self) -> List[SampledFrame]:
        if self._frames is None:
            raise AnalysisError("Frame feature set has already been released")
        return self._frames


@dataclass(frozen=True)
class CandidateSubscores:
    ssim: float
    hist_similarity: float
    flow_error: float


@dataclass(frozen=True)
class LoopCandidate:
    """A scored (start, end) pair that could close into a loop."""

    start_ms: float
    end_ms: float
    score: float
    subscores: CandidateSubscores
    start_frame: Optional[int] = None
    end_frame: Optional[int] = None

    @property
    def duration_ms(self) -> float:
        return self.end_ms - self.start_ms

    def to_dict(self) -> Dict[str, object]:
        return {
            "start_ms": self.start_ms,
            "end_ms": self.end_ms,
            "score": self.score,
            "subscores": {
                "ssim": self.subscores.ssim,
                "hist_similarity": self.subscores.hist_similarity,
                "flow_error": self.subscores.flow_error,
            },
            "start_frame": self.start_frame,
            "end_frame": self.end_frame,
        }


@dataclass(frozen=True)
class AnalysisOptions:
    min_loop_ms: float
    max_loop_ms: float
    analysis_fps: int = 12

    def validate(self) -> None:
        if self.analysis_fps < 1:
            raise AnalysisError(f"analysis_fps must be at least 1, got {self.analysis_fps}")
        if self.min_loop_ms <= 0:
            raise AnalysisError(f"min_loop_ms must be positive, got {self.min_loop_ms}")
        if self.max_loop_ms < self.min_loop_ms:
            raise AnalysisError(
                f"max_loop_ms ({self.max_loop_ms}) must not be below min_loop_ms ({self.min_loop_ms})"
            )


@dataclass
class AnalysisResult:
    """Result bundle produced by the loop analyzer."""

    candidates: List[LoopCandidate]
    heatmap: List[float]
    duration_ms: float
    video_dimensions: Tuple[int, int]
    frame_interval_ms: float
    summary: Dict[str, object] = field(default_factory=dict)
