"""High-level loop analysis orchestrator."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Optional

from .cancellation import CancellationToken
from .engine import TranscodeEngine
from .errors import AnalysisError, LoopJobError
from .features import FeatureExtractor, FeatureExtractorConfig
from .ranking import RankingConfig, build_heatmap, rank_candidates
from .sampler import FrameSampler, SamplerConfig
from .search import CandidateSearch, SearchConfig, SearchOutcome, frame_distance_bounds
from .types import AnalysisOptions, AnalysisResult, VideoInfo

ProgressCallback = Callable[[float, str], None]

SEARCH_PROGRESS_START = 25.0
SEARCH_PROGRESS_SPAN = 70.0


@dataclass
class AnalyzerConfig:
    sampler: SamplerConfig = field(default_factory=SamplerConfig)
    feature: FeatureExtractorConfig = field(default_factory=FeatureExtractorConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    ranking: RankingConfig = field(default_factory=RankingConfig)
    engine_timeout_sec: float = 600.0


class LoopAnalyzer:
    """Coordinates sampling, feature extraction, pairwise search and ranking."""

    def __init__(self, config: AnalyzerConfig | None = None, logger: logging.Logger | None = None) -> None:
        self._config = config or AnalyzerConfig()
        self._logger = logger or logging.getLogger(__name__)
        self._sampler = FrameSampler(self._config.sampler, self._logger)
        self._feature_extractor = FeatureExtractor(self._config.feature)
        # Optical flow uses the extractor's Farneback settings.
        search_config = replace(self._config.search, flow=self._config.feature.flow)
        self._search = CandidateSearch(search_config, self._logger)

    @property
    def config(self) -> AnalyzerConfig:
        return self._config

    def analyze(
        self,
        video_path: str,
        duration_ms: float | None,
        options: AnalysisOptions,
        progress: ProgressCallback | None = None,
        cancel: CancellationToken | None = None,
        engine: TranscodeEngine | None = None,
    ) -> AnalysisResult:
        options.validate()
        self._report(progress, 0.0, "Initializing tools...")
        if engine is not None:
            return self._analyze(engine, video_path, duration_ms, options, progress, cancel)
        with TranscodeEngine(timeout_sec=self._config.engine_timeout_sec, logger=self._logger) as owned:
            return self._analyze(owned, video_path, duration_ms, options, progress, cancel)

    # ------------------------------------------------------------------
    def _analyze(
        self,
        engine: TranscodeEngine,
        video_path: str,
        duration_ms: float | None,
        options: AnalysisOptions,
        progress: ProgressCallback | None,
        cancel: CancellationToken | None,
    ) -> AnalysisResult:
        started = time.perf_counter()
        info = engine.probe(video_path)
        self._report(progress, 5.0, "Getting video info...")
        self._checkpoint(cancel)

        effective_duration = float(duration_ms) if duration_ms and duration_ms > 0 else info.duration_ms
        frames = self._sampler.sample(engine, video_path, effective_duration, options.analysis_fps)
        self._report(progress, 20.0, f"Extracted {len(frames)} frames")
        self._checkpoint(cancel)

        try:
            features = self._feature_extractor.extract(frames, options.analysis_fps)
            # Raw RGB frames are no longer needed once descriptors exist.
            del frames
            with features:
                frame_count = len(features)
                self._report(progress, SEARCH_PROGRESS_START, "Analyzing frames...")
                outcome = self._search.search(
                    features,
                    options,
                    progress=lambda fraction, message: self._report(
                        progress,
                        SEARCH_PROGRESS_START + SEARCH_PROGRESS_SPAN * fraction,
                        message,
                    ),
                    cancel=cancel,
                )
        except LoopJobError:
            raise
        except Exception as error:
            raise AnalysisError(f"Loop analysis failed: {error}") from error

        ranked = rank_candidates(outcome.candidates, self._config.ranking)
        heatmap = build_heatmap(ranked, effective_duration, self._config.ranking)
        self._report(progress, 100.0, "Analysis complete!")

        elapsed = time.perf_counter() - started
        self._logger.info(
            "Analysed %s in %.2fs (frames=%d, pairs=%d, candidates=%d)",
            video_path,
            elapsed,
            frame_count,
            outcome.pairs_evaluated,
            len(ranked),
        )
        return AnalysisResult(
            candidates=ranked,
            heatmap=heatmap,
            duration_ms=effective_duration,
            video_dimensions=info.dimensions,
            frame_interval_ms=1000.0 / options.analysis_fps,
            summary=self._summary(info, options, frame_count, outcome, elapsed),
        )

    def _summary(
        self,
        info: VideoInfo,
        options: AnalysisOptions,
        frame_count: int,
        outcome: SearchOutcome,
        elapsed: float,
    ) -> dict:
        min_dist, max_dist = frame_distance_bounds(options)
        return {
            "frames": frame_count,
            "analysis_fps": options.analysis_fps,
            "min_frame_distance": min_dist,
            "max_frame_distance": max_dist,
            "pairs_evaluated": outcome.pairs_evaluated,
            "flow_evaluations": outcome.flow_evaluations,
            "pairs_above_threshold": len(outcome.candidates),
            "prune_threshold": self._config.search.prune_threshold,
            "source_fps": info.fps,
            "elapsed_sec": round(elapsed, 3),
        }

    @staticmethod
    def _checkpoint(cancel: Optional[CancellationToken]) -> None:
        if cancel is not None:
            cancel.raise_if_cancelled()

    @staticmethod
    def _report(progress: Optional[ProgressCallback], percent: float, message: str) -> None:
        if progress is not None:
            progress(max(0.0, min(100.0, percent)), message)


__all__ = ["AnalyzerConfig", "LoopAnalyzer"]
