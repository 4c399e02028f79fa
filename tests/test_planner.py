from __future__ import annotations

import re
from collections import Counter

import pytest

from src.pipeline.errors import RenderConfigError
from src.pipeline.types import CandidateSubscores, LoopCandidate
from src.render.planner import OutputFormat, RenderMode, RenderPlan, plan_pipeline

CANDIDATE = LoopCandidate(
    start_ms=1000,
    end_ms=5000,
    score=0.92,
    subscores=CandidateSubscores(ssim=0.95, hist_similarity=0.9, flow_error=0.01),
)


def _plan(mode, output_format="mp4", crossfade_ms=200.0, **kwargs) -> RenderPlan:
    return RenderPlan.create(mode, CANDIDATE, output_format=output_format, crossfade_ms=crossfade_ms, **kwargs)


def _assert_labels_used_once(filter_complex: str) -> None:
    inputs = Counter()
    for chain in filter_complex.split(";"):
        leading = re.match(r"^((?:\[[^\]]+\])+)", chain)
        assert leading, chain
        inputs.update(re.findall(r"\[([^\]]+)\]", leading.group(1)))
    assert all(count == 1 for count in inputs.values()), inputs


@pytest.mark.parametrize(
    "mode, expected",
    [
        (RenderMode.CUT, 4000),
        (RenderMode.CROSSFADE, 4000),
        (RenderMode.PING_PONG, 8000),
        (RenderMode.FLOW_MORPH, 4000),
    ],
)
def test_output_duration_per_mode(mode, expected) -> None:
    spec = plan_pipeline(_plan(mode))

    assert spec.expected_duration_ms == pytest.approx(expected)
    assert spec.mime_type == "video/mp4"
    _assert_labels_used_once(spec.filter_complex)


def test_cut_is_a_single_trim() -> None:
    spec = plan_pipeline(_plan("cut", crossfade_ms=0))

    assert spec.filter_complex == "[0:v]trim=start=1:end=5,setpts=PTS-STARTPTS[s0]"
    assert spec.output.label == "s0"


def test_crossfade_blends_tail_into_head() -> None:
    spec = plan_pipeline(_plan("crossfade"))

    assert "xfade=transition=fade:duration=0.2:offset=3.8" in spec.filter_complex
    assert spec.filter_complex.endswith("trim=duration=4,setpts=PTS-STARTPTS[s4]")


def test_flow_morph_centres_interpolated_transition() -> None:
    spec = plan_pipeline(_plan("flow_morph"))

    assert "minterpolate=fps=30" in spec.filter_complex
    assert "trim=start=0.1:duration=0.2" in spec.filter_complex
    assert "split=3" in spec.filter_complex


def test_gif_uses_palette_pipeline() -> None:
    spec = plan_pipeline(_plan("cut", output_format="gif", crossfade_ms=0))

    assert spec.mime_type == "image/gif"
    assert spec.suffix == "gif"
    assert "-loop" in spec.output_args
    assert "fps=15" in spec.filter_complex
    assert "scale=512:-1:flags=lanczos" in spec.filter_complex
    assert "palettegen=stats_mode=diff" in spec.filter_complex
    assert "paletteuse" in spec.filter_complex
    assert spec.expected_duration_ms == pytest.approx(4000)
    _assert_labels_used_once(spec.filter_complex)


def test_gif_ping_pong_doubles_duration() -> None:
    spec = plan_pipeline(_plan("ping_pong", output_format="gif"))

    assert spec.expected_duration_ms == pytest.approx(8000)
    assert "reverse" in spec.filter_complex


def test_outputs_drop_audio() -> None:
    for output_format in OutputFormat:
        spec = plan_pipeline(_plan("cut", output_format=output_format, crossfade_ms=0))
        assert "-an" in spec.output_args


def test_target_resolution_is_made_even() -> None:
    spec = plan_pipeline(_plan("cut", output_format="webm", target_resolution=(1281, 721)))

    assert spec.filter_complex.endswith("scale=1280:720[s1]")
    assert spec.mime_type == "video/webm"


@pytest.mark.parametrize("mode", ["crossfade", "flow_morph"])
def test_transition_as_long_as_loop_is_rejected(mode) -> None:
    with pytest.raises(RenderConfigError):
        _plan(mode, crossfade_ms=4000)


@pytest.mark.parametrize("mode", ["crossfade", "flow_morph"])
def test_transition_modes_need_positive_crossfade(mode) -> None:
    with pytest.raises(RenderConfigError):
        _plan(mode, crossfade_ms=0)


def test_unknown_mode_or_format_is_rejected() -> None:
    with pytest.raises(RenderConfigError):
        _plan("boomerang")
    with pytest.raises(RenderConfigError):
        _plan("cut", output_format="avi")


def test_empty_candidate_is_rejected() -> None:
    candidate = LoopCandidate(
        start_ms=2000,
        end_ms=2000,
        score=0.9,
        subscores=CandidateSubscores(ssim=1.0, hist_similarity=1.0, flow_error=0.0),
    )
    with pytest.raises(RenderConfigError):
        RenderPlan.create("cut", candidate)


def test_tiny_target_resolution_is_rejected() -> None:
    with pytest.raises(RenderConfigError):
        _plan("cut", target_resolution=(1, 720))
