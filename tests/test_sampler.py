from __future__ import annotations

import logging

import numpy as np
import pytest

from src.pipeline.errors import DecodeError
from src.pipeline.sampler import FrameSampler, SamplerConfig


class FakeEngine:
    def __init__(self, available: int) -> None:
        self.available = available
        self.calls = []

    def extract_frames(self, video_path, fps, width, max_frames=None):
        self.calls.append((video_path, fps, width, max_frames))
        return [np.full((9, 16, 3), index % 256, dtype=np.uint8) for index in range(self.available)]


def test_expected_frame_count() -> None:
    assert FrameSampler.expected_frame_count(10000, 12) == 120
    assert FrameSampler.expected_frame_count(1000 / 3 * 3, 3) == 3
    assert FrameSampler.expected_frame_count(50, 12) == 0
    assert FrameSampler.expected_frame_count(0, 12) == 0


def test_sample_requests_expected_frames() -> None:
    engine = FakeEngine(available=120)
    sampler = FrameSampler(SamplerConfig(analysis_fps=12, analysis_width=320))

    frames = sampler.sample(engine, "clip.mp4", 10000)

    assert len(frames) == 120
    assert engine.calls == [("clip.mp4", 12, 320, 120)]


def test_sample_truncates_extra_frames() -> None:
    frames = FrameSampler().sample(FakeEngine(available=130), "clip.mp4", 10000, fps=12)

    assert len(frames) == 120
    assert int(frames[-1][0, 0, 0]) == 119


def test_sample_warns_on_shortfall(caplog) -> None:
    sampler = FrameSampler(logger=logging.getLogger("test.sampler"))
    with caplog.at_level(logging.WARNING, logger="test.sampler"):
        frames = sampler.sample(FakeEngine(available=100), "clip.mp4", 10000, fps=12)

    assert len(frames) == 100
    assert "100 of 120" in caplog.text


def test_sample_rejects_empty_duration() -> None:
    with pytest.raises(DecodeError):
        FrameSampler().sample(FakeEngine(available=10), "clip.mp4", 0)
    with pytest.raises(DecodeError):
        FrameSampler().sample(FakeEngine(available=10), "clip.mp4", 40, fps=12)
