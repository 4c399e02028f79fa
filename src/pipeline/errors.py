"""Error taxonomy shared by the analysis and render stages."""
from __future__ import annotations


class LoopJobError(RuntimeError):
    """Base class for failures that terminate an analysis or render job."""

    error_type = "LoopJobError"


class DecodeError(LoopJobError):
    """Raised when the source video cannot be demuxed, probed or sampled."""

    error_type = "DecodeError"


class AnalysisError(LoopJobError):
    """Raised when feature extraction or candidate scoring fails."""

    error_type = "AnalysisError"


class RenderConfigError(LoopJobError):
    """Raised when a candidate and render options cannot be combined."""

    error_type = "RenderConfigError"


class EncodeError(LoopJobError):
    """Raised when the transcoding engine fails to execute a pipeline."""

    error_type = "EncodeError"


class JobCancelled(LoopJobError):
    """Raised at a checkpoint once a job's cancellation token is set."""

    error_type = "JobCancelled"


__all__ = [
    "LoopJobError",
    "DecodeError",
    "AnalysisError",
    "RenderConfigError",
    "EncodeError",
    "JobCancelled",
]
