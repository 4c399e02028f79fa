"""Ranking and display helpers for scored loop candidates."""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, List

from .types import LoopCandidate


@dataclass
class RankingConfig:
    top_k: int = 10
    heatmap_buckets: int = 100
    heatmap_filler: float = 0.05
    dedupe_window_ms: float = 100.0


def rank_candidates(candidates: Iterable[LoopCandidate], config: RankingConfig | None = None) -> List[LoopCandidate]:
    """Return the best ``top_k`` candidates, highest score first.

    Equal scores keep their search order. A candidate whose start and end
    both sit within ``dedupe_window_ms`` of an already kept candidate is
    treated as the same seam and dropped.
    """
    cfg = config or RankingConfig()
    valid = [
        candidate
        for candidate in candidates
        if math.isfinite(candidate.score) and 0.0 <= candidate.score <= 1.0 and candidate.end_ms > candidate.start_ms
    ]
    ordered = sorted(valid, key=lambda candidate: candidate.score, reverse=True)

    kept: List[LoopCandidate] = []
    limit = max(0, cfg.top_k)
    window = max(0.0, cfg.dedupe_window_ms)
    for candidate in ordered:
        if len(kept) >= limit:
            break
        if any(_same_seam(candidate, other, window) for other in kept):
            continue
        kept.append(candidate)
    return kept


def build_heatmap(
    candidates: Iterable[LoopCandidate],
    duration_ms: float,
    config: RankingConfig | None = None,
) -> List[float]:
    """Coarse per-bucket score series across the video, for display only."""
    cfg = config or RankingConfig()
    buckets = max(1, cfg.heatmap_buckets)
    series = [float(cfg.heatmap_filler)] * buckets
    if duration_ms <= 0:
        return series
    kept = list(candidates)
    bucket_ms = duration_ms / buckets
    for index in range(buckets):
        centre = (index + 0.5) * bucket_ms
        covering = [c.score for c in kept if c.start_ms <= centre < c.end_ms]
        if covering:
            series[index] = max(covering)
    return series


def _same_seam(candidate: LoopCandidate, other: LoopCandidate, window_ms: float) -> bool:
    if candidate.start_ms == other.start_ms and candidate.end_ms == other.end_ms:
        return True
    return abs(candidate.start_ms - other.start_ms) <= window_ms and abs(candidate.end_ms - other.end_ms) <= window_ms


__all__ = ["RankingConfig", "build_heatmap", "rank_candidates"]
