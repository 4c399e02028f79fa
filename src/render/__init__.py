"""Seam rendering for SeamLoop."""

from .graph import FilterGraph, GraphError, Stream
from .planner import MIME_TYPES, OutputFormat, PipelineSpec, RenderMode, RenderPlan, plan_pipeline
from .renderer import LoopRenderer, RenderOutput

__all__ = [
    "FilterGraph",
    "GraphError",
    "Stream",
    "MIME_TYPES",
    "OutputFormat",
    "PipelineSpec",
    "RenderMode",
    "RenderPlan",
    "plan_pipeline",
    "LoopRenderer",
    "RenderOutput",
]
