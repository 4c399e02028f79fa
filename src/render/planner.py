"""Seam render planning: turns a chosen candidate into a filter pipeline."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

from src.pipeline.errors import RenderConfigError
from src.pipeline.types import LoopCandidate

from .graph import (
    Blend,
    Concat,
    FilterGraph,
    Fps,
    Interpolate,
    PaletteGen,
    PaletteUse,
    Reverse,
    Scale,
    Split,
    Stream,
    Trim,
)

GIF_FPS = 15
GIF_WIDTH = 512
INTERPOLATE_FPS = 30


class RenderMode(str, Enum):
    CUT = "cut"
    CROSSFADE = "crossfade"
    PING_PONG = "ping_pong"
    FLOW_MORPH = "flow_morph"


class OutputFormat(str, Enum):
    MP4 = "mp4"
    WEBM = "webm"
    GIF = "gif"


MIME_TYPES: Dict[OutputFormat, str] = {
    OutputFormat.MP4: "video/mp4",
    OutputFormat.WEBM: "video/webm",
    OutputFormat.GIF: "image/gif",
}

OUTPUT_ARGS: Dict[OutputFormat, Tuple[str, ...]] = {
    OutputFormat.MP4: (
        "-an",
        "-c:v",
        "libx264",
        "-preset",
        "fast",
        "-pix_fmt",
        "yuv420p",
        "-movflags",
        "+faststart",
    ),
    OutputFormat.WEBM: ("-an", "-c:v", "libvpx-vp9", "-b:v", "0", "-crf", "32", "-pix_fmt", "yuv420p"),
    OutputFormat.GIF: ("-an", "-loop", "0"),
}

_TRANSITION_MODES = {RenderMode.CROSSFADE, RenderMode.FLOW_MORPH}


@dataclass(frozen=True)
class RenderPlan:
    """Everything a render job needs; build it with ``RenderPlan.create``."""

    mode: RenderMode
    candidate: LoopCandidate
    output_format: OutputFormat = OutputFormat.MP4
    crossfade_ms: float = 0.0
    target_resolution: Optional[Tuple[int, int]] = None

    @property
    def loop_duration_ms(self) -> float:
        return self.candidate.end_ms - self.candidate.start_ms

    @classmethod
    def create(
        cls,
        mode: RenderMode | str,
        candidate: LoopCandidate,
        output_format: OutputFormat | str = OutputFormat.MP4,
        crossfade_ms: float = 0.0,
        target_resolution: Optional[Tuple[int, int]] = None,
    ) -> "RenderPlan":
        try:
            mode_value = RenderMode(mode)
            format_value = OutputFormat(output_format)
        except ValueError as error:
            raise RenderConfigError(str(error)) from error
        plan = cls(
            mode=mode_value,
            candidate=candidate,
            output_format=format_value,
            crossfade_ms=float(crossfade_ms or 0.0),
            target_resolution=tuple(target_resolution) if target_resolution else None,
        )
        plan.validate()
        return plan

    def validate(self) -> None:
        loop = self.loop_duration_ms
        if self.candidate.start_ms < 0 or loop <= 0:
            raise RenderConfigError(
                f"Candidate [{self.candidate.start_ms}, {self.candidate.end_ms}) has no positive duration"
            )
        if self.mode in _TRANSITION_MODES:
            if self.crossfade_ms <= 0:
                raise RenderConfigError(f"{self.mode.value} needs a positive crossfade duration")
            if self.crossfade_ms >= loop:
                raise RenderConfigError(
                    f"Crossfade of {self.crossfade_ms:.0f}ms must be shorter than the {loop:.0f}ms loop"
                )
        if self.target_resolution is not None:
            width, height = self.target_resolution
            if width < 2 or height < 2:
                raise RenderConfigError(f"Invalid target resolution {width}x{height}")


@dataclass(frozen=True)
class PipelineSpec:
    """A validated filter graph plus the encoder settings to run it with."""

    graph: FilterGraph
    output: Stream
    output_args: Tuple[str, ...]
    suffix: str
    mime_type: str
    expected_duration_ms: float

    @property
    def filter_complex(self) -> str:
        return self.graph.to_filter_complex(self.output)


def plan_pipeline(plan: RenderPlan) -> PipelineSpec:
    """Build the filter graph implementing ``plan``'s seam strategy."""
    plan.validate()
    candidate = plan.candidate
    graph = FilterGraph()
    segment = graph.chain(Trim(start_ms=candidate.start_ms, end_ms=candidate.end_ms), graph.source())

    if plan.output_format is OutputFormat.GIF:
        output = _gif(graph, segment, plan)
    elif plan.mode is RenderMode.CUT:
        output = segment
    elif plan.mode is RenderMode.CROSSFADE:
        output = _crossfade(graph, segment, plan.loop_duration_ms, plan.crossfade_ms)
    elif plan.mode is RenderMode.PING_PONG:
        output = _ping_pong(graph, segment)
    elif plan.mode is RenderMode.FLOW_MORPH:
        output = _flow_morph(graph, segment, plan.loop_duration_ms, plan.crossfade_ms)
    else:  # pragma: no cover - enum is closed
        raise RenderConfigError(f"Unsupported render mode {plan.mode!r}")

    if plan.output_format is not OutputFormat.GIF and plan.target_resolution:
        width, height = plan.target_resolution
        # yuv420p encoders need even dimensions.
        output = graph.chain(Scale(width - width % 2, height - height % 2), output)

    graph.validate(output)
    return PipelineSpec(
        graph=graph,
        output=output,
        output_args=OUTPUT_ARGS[plan.output_format],
        suffix=plan.output_format.value,
        mime_type=MIME_TYPES[plan.output_format],
        expected_duration_ms=graph.duration_ms(output),
    )


# ----------------------------------------------------------------------
def _crossfade(graph: FilterGraph, segment: Stream, loop_ms: float, crossfade_ms: float) -> Stream:
    main, duplicate = graph.add(Split(2), segment)
    (blended,) = graph.add(Blend(duration_ms=crossfade_ms, offset_ms=loop_ms - crossfade_ms), main, duplicate)
    # The dissolve overlaps the loop instead of extending it.
    return graph.chain(Trim(duration_ms=loop_ms), blended)


def _ping_pong(graph: FilterGraph, segment: Stream) -> Stream:
    forward, backward = graph.add(Split(2), segment)
    reversed_stream = graph.chain(Reverse(), backward)
    (output,) = graph.add(Concat(2), forward, reversed_stream)
    return output


def _flow_morph(graph: FilterGraph, segment: Stream, loop_ms: float, crossfade_ms: float) -> Stream:
    body_ms = loop_ms - crossfade_ms
    main_src, tail_src, head_src = graph.add(Split(3), segment)
    main = graph.chain(Trim(duration_ms=body_ms), main_src)
    tail = graph.chain(Trim(start_ms=body_ms), tail_src)
    head = graph.chain(Trim(duration_ms=crossfade_ms), head_src)
    (cross_section,) = graph.add(Concat(2), tail, head)
    interpolated = graph.chain(Interpolate(fps=INTERPOLATE_FPS), cross_section)
    # Centre the transition on the original seam.
    transition = graph.chain(Trim(start_ms=crossfade_ms / 2.0, duration_ms=crossfade_ms), interpolated)
    (output,) = graph.add(Concat(2), main, transition)
    return output


def _gif(graph: FilterGraph, segment: Stream, plan: RenderPlan) -> Stream:
    stream = _ping_pong(graph, segment) if plan.mode is RenderMode.PING_PONG else segment
    stream = graph.chain(Fps(GIF_FPS), stream)
    stream = graph.chain(Scale(GIF_WIDTH, -1, flags="lanczos"), stream)
    frames, palette_source = graph.add(Split(2), stream)
    palette = graph.chain(PaletteGen(stats_mode="diff"), palette_source)
    (output,) = graph.add(PaletteUse(), frames, palette)
    return output


__all__ = [
    "GIF_FPS",
    "GIF_WIDTH",
    "MIME_TYPES",
    "OutputFormat",
    "PipelineSpec",
    "RenderMode",
    "RenderPlan",
    "plan_pipeline",
]
