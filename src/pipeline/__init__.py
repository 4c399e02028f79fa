"""Loop-candidate discovery pipeline for SeamLoop."""

from .analyzer import AnalyzerConfig, LoopAnalyzer
from .cancellation import CancellationToken
from .engine import TranscodeEngine
from .errors import AnalysisError, DecodeError, EncodeError, JobCancelled, LoopJobError, RenderConfigError
from .features import FarnebackParams, FeatureExtractor, FeatureExtractorConfig
from .ranking import RankingConfig, build_heatmap, rank_candidates
from .sampler import FrameSampler, Sampler, SamplerConfig
from .search import CandidateSearch, SearchConfig, SearchOutcome, frame_distance_bounds
from .types import (
    AnalysisOptions,
    AnalysisResult,
    CandidateSubscores,
    FrameFeatureSet,
    LoopCandidate,
    SampledFrame,
    VideoInfo,
)

__all__ = [
    "AnalyzerConfig",
    "LoopAnalyzer",
    "CancellationToken",
    "TranscodeEngine",
    "AnalysisError",
    "DecodeError",
    "EncodeError",
    "JobCancelled",
    "LoopJobError",
    "RenderConfigError",
    "FarnebackParams",
    "FeatureExtractor",
    "FeatureExtractorConfig",
    "RankingConfig",
    "build_heatmap",
    "rank_candidates",
    "FrameSampler",
    "Sampler",
    "SamplerConfig",
    "CandidateSearch",
    "SearchConfig",
    "SearchOutcome",
    "frame_distance_bounds",
    "AnalysisOptions",
    "AnalysisResult",
    "CandidateSubscores",
    "FrameFeatureSet",
    "LoopCandidate",
    "SampledFrame",
    "VideoInfo",
]
