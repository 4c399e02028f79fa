"""Per-frame descriptors and pairwise frame distances."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List

import cv2
import numpy as np

from .errors import AnalysisError
from .types import FrameFeatureSet, SampledFrame

SSIM_C1 = (0.01 * 255) ** 2
SSIM_C2 = (0.03 * 255) ** 2


@dataclass(frozen=True)
class FarnebackParams:
    pyr_scale: float = 0.5
    levels: int = 3
    winsize: int = 15
    iterations: int = 3
    poly_n: int = 5
    poly_sigma: float = 1.2


@dataclass
class FeatureExtractorConfig:
    histogram_bins: int = 32
    flow: FarnebackParams = field(default_factory=FarnebackParams)


class FeatureExtractor:
    """Turns sampled RGB frames into the job's ``FrameFeatureSet``."""

    def __init__(self, config: FeatureExtractorConfig | None = None) -> None:
        self._config = config or FeatureExtractorConfig()
        self._hist_bins = max(2, self._config.histogram_bins)

    def extract(self, frames: Iterable[np.ndarray], fps: float) -> FrameFeatureSet:
        if fps <= 0:
            raise AnalysisError(f"Analysis frame rate must be positive, got {fps}")
        interval_ms = 1000.0 / fps
        sampled: List[SampledFrame] = []
        for index, frame in enumerate(frames):
            if frame is None:
                raise AnalysisError(f"Frame {index} has no pixel data")
            luma, hist = self._frame_features(frame)
            sampled.append(
                SampledFrame(
                    index=index,
                    timestamp_ms=index * interval_ms,
                    luma=luma,
                    color_hist=hist,
                )
            )
        if not sampled:
            raise AnalysisError("No sampled frames with pixel data")
        return FrameFeatureSet(sampled, fps=fps)

    # ------------------------------------------------------------------
    def _frame_features(self, frame: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        if frame.ndim != 3 or frame.shape[2] != 3:
            raise AnalysisError("Expected RGB frame with 3 channels")
        rgb = frame if frame.dtype == np.uint8 else np.clip(frame, 0, 255).astype(np.uint8)
        try:
            luma = cv2.cvtColor(rgb, cv2.COLOR_RGB2GRAY)
            hsv = cv2.cvtColor(rgb, cv2.COLOR_RGB2HSV)
            hist = cv2.calcHist([hsv], [0, 1], None, [self._hist_bins, self._hist_bins], [0, 180, 0, 256])
        except cv2.error as error:
            raise AnalysisError(f"OpenCV failed to describe frame: {error}") from error
        hist = hist.astype(np.float32)
        total = float(hist.sum())
        if total > 0:
            hist /= total
        return luma, hist


def global_ssim(luma_a: np.ndarray, luma_b: np.ndarray) -> float:
    """Whole-frame SSIM estimate from global means, variances and covariance.

    This is intentionally a single global value rather than the usual
    windowed structural map; scores produced downstream depend on it.
    """
    if luma_a.shape != luma_b.shape:
        raise AnalysisError(f"Luma buffers differ in shape: {luma_a.shape} vs {luma_b.shape}")
    a = luma_a.astype(np.float64)
    b = luma_b.astype(np.float64)

    mean_a = float(a.mean())
    mean_b = float(b.mean())
    var_a = float((a * a).mean()) - mean_a * mean_a
    var_b = float((b * b).mean()) - mean_b * mean_b
    covariance = float((a * b).mean()) - mean_a * mean_b

    numerator = (2 * mean_a * mean_b + SSIM_C1) * (2 * covariance + SSIM_C2)
    denominator = (mean_a * mean_a + mean_b * mean_b + SSIM_C1) * (var_a + var_b + SSIM_C2)
    if denominator == 0:
        return 0.0
    return float(min(1.0, max(0.0, numerator / denominator)))


def bhattacharyya(hist_a: np.ndarray, hist_b: np.ndarray) -> float:
    """Bhattacharyya distance in [0, 1]; 0 means identical colour distributions."""
    try:
        distance = cv2.compareHist(hist_a, hist_b, cv2.HISTCMP_BHATTACHARYYA)
    except cv2.error as error:
        raise AnalysisError(f"Histogram comparison failed: {error}") from error
    if not np.isfinite(distance):
        return 1.0
    return float(min(1.0, max(0.0, distance)))


def flow_error(luma_a: np.ndarray, luma_b: np.ndarray, params: FarnebackParams | None = None) -> float:
    """L2 norm of the dense Farneback flow field divided by the pixel count."""
    if luma_a.shape != luma_b.shape:
        raise AnalysisError(f"Luma buffers differ in shape: {luma_a.shape} vs {luma_b.shape}")
    if np.array_equal(luma_a, luma_b):
        return 0.0
    p = params or FarnebackParams()
    try:
        flow = cv2.calcOpticalFlowFarneback(
            luma_a,
            luma_b,
            None,
            p.pyr_scale,
            p.levels,
            p.winsize,
            p.iterations,
            p.poly_n,
            p.poly_sigma,
            0,
        )
    except cv2.error as error:
        raise AnalysisError(f"Optical flow failed: {error}") from error
    height, width = luma_a.shape[:2]
    return float(np.linalg.norm(flow) / (width * height))


__all__ = [
    "FarnebackParams",
    "FeatureExtractor",
    "FeatureExtractorConfig",
    "bhattacharyya",
    "flow_error",
    "global_ssim",
]
