from __future__ import annotations

import pytest

from src.render.graph import Blend, Concat, FilterGraph, GraphError, Reverse, Split, Stream, Trim


def test_single_chain_serialises() -> None:
    graph = FilterGraph()
    output = graph.chain(Trim(start_ms=1000, end_ms=3500), graph.source())

    assert graph.to_filter_complex(output) == "[0:v]trim=start=1:end=3.5,setpts=PTS-STARTPTS[s0]"
    assert graph.duration_ms(output) == 2500


def test_split_feeds_each_branch_once() -> None:
    graph = FilterGraph()
    forward, backward = graph.add(Split(2), graph.source())
    reversed_stream = graph.chain(Reverse(), backward)
    (output,) = graph.add(Concat(2), forward, reversed_stream)

    assert graph.to_filter_complex(output) == (
        "[0:v]split=2[s0][s1];[s1]reverse[s2];[s0][s2]concat=n=2:v=1:a=0[s3]"
    )
    assert graph.duration_ms(output, source_duration_ms=1500) == 3000


def test_reusing_a_stream_is_rejected() -> None:
    graph = FilterGraph()
    source = graph.source()
    reversed_stream = graph.chain(Reverse(), source)
    (output,) = graph.add(Concat(2), source, reversed_stream)

    with pytest.raises(GraphError, match="consumed 2 times"):
        graph.validate(output)


def test_dangling_stream_is_rejected() -> None:
    graph = FilterGraph()
    main, _unused = graph.add(Split(2), graph.source())
    output = graph.chain(Reverse(), main)

    with pytest.raises(GraphError, match="consumed 0 times"):
        graph.to_filter_complex(output)


def test_output_must_not_be_consumed() -> None:
    graph = FilterGraph()
    first = graph.chain(Reverse(), graph.source())
    graph.chain(Reverse(), first)

    with pytest.raises(GraphError):
        graph.validate(first)


def test_arity_and_unknown_streams() -> None:
    graph = FilterGraph()
    with pytest.raises(GraphError):
        graph.add(Concat(2), graph.source())
    with pytest.raises(GraphError):
        graph.chain(Reverse(), Stream("missing"))
    with pytest.raises(GraphError):
        graph.chain(Split(2), graph.source())


def test_blend_duration_overlaps_inputs() -> None:
    graph = FilterGraph()
    a, b = graph.add(Split(2), graph.source())
    (blended,) = graph.add(Blend(duration_ms=200, offset_ms=3800), a, b)

    assert graph.duration_ms(blended, source_duration_ms=4000) == 7800
    assert "xfade=transition=fade:duration=0.2:offset=3.8" in graph.to_filter_complex(blended)


def test_trim_without_bounds_is_invalid() -> None:
    with pytest.raises(GraphError):
        Trim().expression()
