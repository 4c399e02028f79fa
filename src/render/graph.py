"""Typed video filter graph with ffmpeg ``-filter_complex`` serialisation.

Nodes describe what a filter does and how it changes stream durations, so a
graph can be checked and measured without running the transcoding engine.
"""
from __future__ import annotations

import math
from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple


class GraphError(RuntimeError):
    """Raised when a filter graph is wired incorrectly."""


def _seconds(ms: float) -> str:
    text = f"{ms / 1000.0:.6f}".rstrip("0").rstrip(".")
    return text or "0"


@dataclass(frozen=True)
class Stream:
    label: str


class FilterNode:
    """Base class for graph nodes."""

    def input_count(self) -> int:
        return 1

    def output_count(self) -> int:
        return 1

    def expression(self) -> str:
        raise NotImplementedError

    def durations(self, inputs: Sequence[float]) -> List[float]:
        return [inputs[0]] * self.output_count()


@dataclass(frozen=True)
class Trim(FilterNode):
    """Keep ``[start_ms, end_ms)`` of the input, optionally capped at ``duration_ms``; timestamps restart at 0."""

    start_ms: float | None = None
    end_ms: float | None = None
    duration_ms: float | None = None

    def expression(self) -> str:
        params = []
        if self.start_ms is not None:
            params.append(f"start={_seconds(self.start_ms)}")
        if self.end_ms is not None:
            params.append(f"end={_seconds(self.end_ms)}")
        if self.duration_ms is not None:
            params.append(f"duration={_seconds(self.duration_ms)}")
        if not params:
            raise GraphError("Trim needs at least one of start, end or duration")
        return "trim=" + ":".join(params) + ",setpts=PTS-STARTPTS"

    def durations(self, inputs: Sequence[float]) -> List[float]:
        source = inputs[0]
        start = self.start_ms or 0.0
        stop = source if self.end_ms is None else min(self.end_ms, source)
        if self.duration_ms is not None:
            stop = min(stop, start + self.duration_ms)
        return [max(0.0, stop - start)]


@dataclass(frozen=True)
class Split(FilterNode):
    count: int = 2

    def output_count(self) -> int:
        return self.count

    def expression(self) -> str:
        return f"split={self.count}"


@dataclass(frozen=True)
class Blend(FilterNode):
    """Linear dissolve of the second input over the first, starting at ``offset_ms``."""

    duration_ms: float
    offset_ms: float
    transition: str = "fade"

    def input_count(self) -> int:
        return 2

    def expression(self) -> str:
        return (
            f"xfade=transition={self.transition}:duration={_seconds(self.duration_ms)}"
            f":offset={_seconds(self.offset_ms)}"
        )

    def durations(self, inputs: Sequence[float]) -> List[float]:
        return [self.offset_ms + inputs[1]]


@dataclass(frozen=True)
class Concat(FilterNode):
    count: int = 2

    def input_count(self) -> int:
        return self.count

    def expression(self) -> str:
        return f"concat=n={self.count}:v=1:a=0"

    def durations(self, inputs: Sequence[float]) -> List[float]:
        return [float(sum(inputs))]


@dataclass(frozen=True)
class Reverse(FilterNode):
    def expression(self) -> str:
        return "reverse"


@dataclass(frozen=True)
class Interpolate(FilterNode):
    """Motion-compensated frame interpolation."""

    fps: int = 30

    def expression(self) -> str:
        return f"minterpolate=fps={self.fps}:mi_mode=mci:mc_mode=aobmc:me_mode=bidir:vsbmc=1"


@dataclass(frozen=True)
class Scale(FilterNode):
    width: int
    height: int
    flags: str | None = None

    def expression(self) -> str:
        text = f"scale={self.width}:{self.height}"
        if self.flags:
            text += f":flags={self.flags}"
        return text


@dataclass(frozen=True)
class Fps(FilterNode):
    fps: int

    def expression(self) -> str:
        return f"fps={self.fps}"


@dataclass(frozen=True)
class PaletteGen(FilterNode):
    stats_mode: str = "diff"

    def expression(self) -> str:
        return f"palettegen=stats_mode={self.stats_mode}"

    def durations(self, inputs: Sequence[float]) -> List[float]:
        # A palette is a single still image.
        return [0.0]


@dataclass(frozen=True)
class PaletteUse(FilterNode):
    def input_count(self) -> int:
        return 2

    def expression(self) -> str:
        return "paletteuse"


@dataclass(frozen=True)
class _Step:
    node: FilterNode
    inputs: Tuple[Stream, ...]
    outputs: Tuple[Stream, ...]


class FilterGraph:
    """Append-only graph over the first video stream of a single input."""

    SOURCE_LABEL = "0:v"

    def __init__(self) -> None:
        self._source = Stream(self.SOURCE_LABEL)
        self._steps: List[_Step] = []
        self._known = {self._source.label}
        self._counter = 0

    def source(self) -> Stream:
        return self._source

    @property
    def nodes(self) -> List[FilterNode]:
        return [step.node for step in self._steps]

    def add(self, node: FilterNode, *inputs: Stream) -> List[Stream]:
        if len(inputs) != node.input_count():
            raise GraphError(f"{type(node).__name__} takes {node.input_count()} input(s), got {len(inputs)}")
        for stream in inputs:
            if stream.label not in self._known:
                raise GraphError(f"Unknown stream [{stream.label}]")
        outputs = []
        for _ in range(node.output_count()):
            outputs.append(Stream(f"s{self._counter}"))
            self._counter += 1
        self._known.update(stream.label for stream in outputs)
        self._steps.append(_Step(node=node, inputs=tuple(inputs), outputs=tuple(outputs)))
        return outputs

    def chain(self, node: FilterNode, stream: Stream) -> Stream:
        """Add a single-input, single-output node and return its output."""
        outputs = self.add(node, stream)
        if len(outputs) != 1:
            raise GraphError(f"{type(node).__name__} does not have exactly one output")
        return outputs[0]

    def validate(self, output: Stream) -> None:
        """Every stream is consumed exactly once; ``output`` is left for the muxer."""
        if output.label not in self._known:
            raise GraphError(f"Unknown output stream [{output.label}]")
        consumed = Counter(stream.label for step in self._steps for stream in step.inputs)
        produced = [self._source.label] + [stream.label for step in self._steps for stream in step.outputs]
        for label in produced:
            uses = consumed.get(label, 0)
            if label == output.label:
                if uses:
                    raise GraphError(f"Output stream [{label}] must not feed another filter")
            elif uses != 1:
                raise GraphError(f"Stream [{label}] is consumed {uses} times; ffmpeg needs exactly one")

    def to_filter_complex(self, output: Stream) -> str:
        self.validate(output)
        chains = []
        for step in self._steps:
            ins = "".join(f"[{stream.label}]" for stream in step.inputs)
            outs = "".join(f"[{stream.label}]" for stream in step.outputs)
            chains.append(f"{ins}{step.node.expression()}{outs}")
        return ";".join(chains)

    def duration_ms(self, output: Stream, source_duration_ms: float = math.inf) -> float:
        durations: Dict[str, float] = {self._source.label: float(source_duration_ms)}
        for step in self._steps:
            values = step.node.durations([durations[stream.label] for stream in step.inputs])
            for stream, value in zip(step.outputs, values):
                durations[stream.label] = value
        try:
            return durations[output.label]
        except KeyError as error:
            raise GraphError(f"Unknown output stream [{output.label}]") from error


__all__ = [
    "Blend",
    "Concat",
    "FilterGraph",
    "FilterNode",
    "Fps",
    "GraphError",
    "Interpolate",
    "PaletteGen",
    "PaletteUse",
    "Reverse",
    "Scale",
    "Split",
    "Stream",
    "Trim",
]
