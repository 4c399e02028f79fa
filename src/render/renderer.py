"""Executes planned seam pipelines on the transcoding engine."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from src.pipeline.cancellation import CancellationToken
from src.pipeline.engine import TranscodeEngine

from .planner import PipelineSpec, RenderPlan, plan_pipeline

ProgressCallback = Callable[[float, str], None]


@dataclass(frozen=True)
class RenderOutput:
    buffer: bytes
    mime_type: str
    duration_ms: float
    filter_complex: str


class LoopRenderer:
    """Plans a render job and hands the graph to the engine.

    Configuration problems surface as ``RenderConfigError`` before the engine
    is touched; engine failures surface as ``EncodeError``. Neither falls back
    to a simpler mode.
    """

    def __init__(self, engine_timeout_sec: float = 600.0, logger: Optional[logging.Logger] = None) -> None:
        self._engine_timeout = engine_timeout_sec
        self._logger = logger or logging.getLogger(__name__)

    def render(
        self,
        video_path: str,
        plan: RenderPlan,
        progress: ProgressCallback | None = None,
        cancel: CancellationToken | None = None,
        engine: TranscodeEngine | None = None,
    ) -> RenderOutput:
        spec = plan_pipeline(plan)
        if progress:
            progress(5.0, "Preparing render pipeline...")
        if cancel is not None:
            cancel.raise_if_cancelled()
        if engine is not None:
            return self._execute(engine, video_path, spec, plan, progress, cancel)
        with TranscodeEngine(timeout_sec=self._engine_timeout, logger=self._logger) as owned:
            return self._execute(owned, video_path, spec, plan, progress, cancel)

    def _execute(
        self,
        engine: TranscodeEngine,
        video_path: str,
        spec: PipelineSpec,
        plan: RenderPlan,
        progress: ProgressCallback | None,
        cancel: CancellationToken | None = None,
    ) -> RenderOutput:
        started = time.perf_counter()
        filter_complex = spec.filter_complex
        if progress:
            progress(10.0, "Executing render command...")

        def forward(percent: float, message: str) -> None:
            if progress:
                progress(10.0 + 0.88 * percent, message)

        buffer = engine.execute(
            video_path,
            filter_complex,
            spec.output.label,
            spec.output_args,
            spec.suffix,
            expected_duration_ms=spec.expected_duration_ms,
            progress=forward,
            cancel=cancel,
        )
        if progress:
            progress(98.0, "Finalizing...")
        self._logger.info(
            "Rendered %s loop (%s, %.0fms) in %.2fs: %d bytes",
            plan.mode.value,
            plan.output_format.value,
            spec.expected_duration_ms,
            time.perf_counter() - started,
            len(buffer),
        )
        return RenderOutput(
            buffer=buffer,
            mime_type=spec.mime_type,
            duration_ms=spec.expected_duration_ms,
            filter_complex=filter_complex,
        )


__all__ = ["LoopRenderer", "RenderOutput"]
