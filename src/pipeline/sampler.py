"""Fixed-rate frame sampling for loop analysis."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from .engine import TranscodeEngine
from .errors import DecodeError


@dataclass
class SamplerConfig:
    analysis_fps: int = 12
    analysis_width: int = 320


class Sampler:
    """Abstract sampler interface."""

    def sample(self, engine: TranscodeEngine, video_path: str, duration_ms: float, fps: int) -> List[np.ndarray]:
        raise NotImplementedError


class FrameSampler(Sampler):
    """Extracts ``floor(duration * fps)`` downscaled RGB frames in presentation order."""

    def __init__(self, config: SamplerConfig | None = None, logger: Optional[logging.Logger] = None) -> None:
        self._config = config or SamplerConfig()
        self._logger = logger or logging.getLogger(__name__)

    @staticmethod
    def expected_frame_count(duration_ms: float, fps: int) -> int:
        if duration_ms <= 0 or fps <= 0:
            return 0
        # Guard against 9999.999... style float noise before flooring.
        return int(math.floor(duration_ms / 1000.0 * fps + 1e-9))

    def sample(self, engine: TranscodeEngine, video_path: str, duration_ms: float, fps: int | None = None) -> List[np.ndarray]:  # noqa: D401
        rate = int(fps or self._config.analysis_fps)
        if duration_ms <= 0:
            raise DecodeError(f"Source has zero duration: {video_path}")
        expected = self.expected_frame_count(duration_ms, rate)
        if expected == 0:
            raise DecodeError(f"Source is too short to sample at {rate} fps: {duration_ms:.0f}ms")

        self._logger.debug(
            "Sampling %s at %d fps, width=%d, expecting %d frames",
            video_path,
            rate,
            self._config.analysis_width,
            expected,
        )
        frames = engine.extract_frames(video_path, rate, self._config.analysis_width, max_frames=expected)
        if len(frames) > expected:
            frames = frames[:expected]
        elif len(frames) < expected:
            self._logger.warning(
                "Sampled %d of %d expected frames from %s; analysing the shorter sequence",
                len(frames),
                expected,
                video_path,
            )
        return frames


__all__ = ["Sampler", "FrameSampler", "SamplerConfig"]
