"""Pairwise loop-candidate search over a job's frame descriptors."""
from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from .cancellation import CancellationToken
from .features import FarnebackParams, bhattacharyya, flow_error, global_ssim
from .types import AnalysisOptions, CandidateSubscores, FrameFeatureSet, LoopCandidate

SearchProgress = Callable[[float, str], None]


@dataclass
class SearchConfig:
    prune_threshold: float = 0.6
    ssim_weight: float = 0.5
    hist_weight: float = 0.3
    flow_weight: float = 0.2
    flow_scale: float = 2.0
    progress_every: int = 8
    workers: int = 1
    flow: FarnebackParams = field(default_factory=FarnebackParams)


@dataclass
class SearchOutcome:
    candidates: List[LoopCandidate]
    pairs_evaluated: int = 0
    flow_evaluations: int = 0


@dataclass
class _RowResult:
    candidates: List[LoopCandidate]
    pairs: int
    flows: int


def frame_distance_bounds(options: AnalysisOptions) -> Tuple[int, int]:
    """Convert loop-length bounds in milliseconds into frame distances."""
    options.validate()
    fps = options.analysis_fps
    min_dist = max(1, math.ceil(options.min_loop_ms / 1000.0 * fps - 1e-9))
    max_dist = math.floor(options.max_loop_ms / 1000.0 * fps + 1e-9)
    return min_dist, max_dist


def loop_span(start_frame: int, end_frame: int, fps: float, options: AnalysisOptions) -> Tuple[float, float]:
    """Millisecond span of a frame pair whose length honours the loop-length bounds exactly."""
    start_ms = start_frame * 1000.0 / fps
    end_ms = start_ms + (end_frame - start_frame) * 1000.0 / fps
    # Snap rounding noise back onto the bounds; the frame distance already lies within them.
    if end_ms - start_ms < options.min_loop_ms:
        end_ms = start_ms + options.min_loop_ms
    elif end_ms - start_ms > options.max_loop_ms:
        end_ms = start_ms + options.max_loop_ms
    while end_ms - start_ms < options.min_loop_ms:
        end_ms = math.nextafter(end_ms, math.inf)
    while end_ms - start_ms > options.max_loop_ms:
        end_ms = math.nextafter(end_ms, -math.inf)
    return start_ms, end_ms


class CandidateSearch:
    """Scores every (i, j) frame pair inside the loop-length window."""

    def __init__(self, config: SearchConfig | None = None, logger: Optional[logging.Logger] = None) -> None:
        self._config = config or SearchConfig()
        self._logger = logger or logging.getLogger(__name__)

    @property
    def config(self) -> SearchConfig:
        return self._config

    def composite_score(self, ssim: float, hist_similarity: float, flow_err: float) -> float:
        cfg = self._config
        flow_score = 1.0 - min(1.0, flow_err * cfg.flow_scale)
        score = cfg.ssim_weight * ssim + cfg.hist_weight * hist_similarity + cfg.flow_weight * flow_score
        return float(min(1.0, max(0.0, score)))

    def search(
        self,
        features: FrameFeatureSet,
        options: AnalysisOptions,
        progress: SearchProgress | None = None,
        cancel: CancellationToken | None = None,
    ) -> SearchOutcome:
        min_dist, max_dist = frame_distance_bounds(options)
        total = len(features)
        rows = list(range(0, max(0, total - min_dist))) if max_dist >= min_dist else []
        self._logger.debug(
            "Searching %d frames: min_dist=%d max_dist=%d rows=%d threshold=%.2f",
            total,
            min_dist,
            max_dist,
            len(rows),
            self._config.prune_threshold,
        )

        outcome = SearchOutcome(candidates=[])
        if not rows:
            if progress:
                progress(1.0, "No frame pairs within loop bounds")
            return outcome

        every = max(1, self._config.progress_every)
        workers = max(1, self._config.workers)

        def collect(done: int, row: _RowResult) -> None:
            outcome.candidates.extend(row.candidates)
            outcome.pairs_evaluated += row.pairs
            outcome.flow_evaluations += row.flows
            if progress and (done % every == 0 or done == len(rows)):
                progress(done / len(rows), f"Comparing frames... {done}/{len(rows)}")

        if workers == 1:
            for done, i in enumerate(rows, start=1):
                collect(done, self._scan_row(features, options, i, min_dist, max_dist, total, cancel))
        else:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="loop-search") as pool:
                futures = [
                    pool.submit(self._scan_row, features, options, i, min_dist, max_dist, total, cancel) for i in rows
                ]
                try:
                    for done, future in enumerate(futures, start=1):
                        collect(done, future.result())
                except BaseException:
                    for future in futures:
                        future.cancel()
                    raise

        self._logger.debug(
            "Search evaluated %d pairs (%d optical flows), kept %d above threshold",
            outcome.pairs_evaluated,
            outcome.flow_evaluations,
            len(outcome.candidates),
        )
        return outcome

    # ------------------------------------------------------------------
    def _scan_row(
        self,
        features: FrameFeatureSet,
        options: AnalysisOptions,
        i: int,
        min_dist: int,
        max_dist: int,
        total: int,
        cancel: CancellationToken | None,
    ) -> _RowResult:
        if cancel is not None:
            cancel.raise_if_cancelled()

        cfg = self._config
        threshold = cfg.prune_threshold
        frame_i = features[i]
        result = _RowResult(candidates=[], pairs=0, flows=0)
        for j in range(i + min_dist, min(i + max_dist, total)):
            frame_j = features[j]
            result.pairs += 1
            hist_similarity = 1.0 - bhattacharyya(frame_i.color_hist, frame_j.color_hist)
            ssim = global_ssim(frame_i.luma, frame_j.luma)
            # Best case is zero motion; skip the flow when even that cannot clear the threshold.
            if self.composite_score(ssim, hist_similarity, 0.0) <= threshold:
                continue
            flow_err = flow_error(frame_i.luma, frame_j.luma, cfg.flow)
            result.flows += 1
            score = self.composite_score(ssim, hist_similarity, flow_err)
            if score > threshold:
                start_ms, end_ms = loop_span(i, j, features.fps, options)
                result.candidates.append(
                    LoopCandidate(
                        start_ms=start_ms,
                        end_ms=end_ms,
                        score=score,
                        subscores=CandidateSubscores(
                            ssim=ssim,
                            hist_similarity=hist_similarity,
                            flow_error=flow_err,
                        ),
                        start_frame=i,
                        end_frame=j,
                    )
                )
        return result


__all__ = ["CandidateSearch", "SearchConfig", "SearchOutcome", "frame_distance_bounds", "loop_span"]
