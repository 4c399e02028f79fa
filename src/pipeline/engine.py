"""ffmpeg-backed transcoding engine handle.

One ``TranscodeEngine`` is owned per worker context. Entering the context
creates a private scratch directory; leaving it removes the directory and
everything the engine wrote there, whichever way the job ended.
"""
from __future__ import annotations

import json
import logging
import queue
import shutil
import subprocess
import tempfile
import threading
import time
from fractions import Fraction
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import cv2
import numpy as np

from .cancellation import CancellationToken
from .errors import DecodeError, EncodeError
from .types import VideoInfo

FFMPEG_PATH = shutil.which("ffmpeg")
FFPROBE_PATH = shutil.which("ffprobe")

ProgressCallback = Callable[[float, str], None]

# How often a running pipeline is checked for cancellation and its deadline.
POLL_INTERVAL_SEC = 0.25


class TranscodeEngine:
    """Thin wrapper around the ffmpeg/ffprobe executables."""

    def __init__(
        self,
        ffmpeg_path: str | None = None,
        ffprobe_path: str | None = None,
        timeout_sec: float = 600.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._ffmpeg = ffmpeg_path or FFMPEG_PATH
        self._ffprobe = ffprobe_path or FFPROBE_PATH
        self._timeout = timeout_sec
        self._logger = logger or logging.getLogger(__name__)
        self._scratch: Optional[tempfile.TemporaryDirectory] = None

    def __enter__(self) -> "TranscodeEngine":
        self.open()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def open(self) -> None:
        if self._scratch is None:
            self._scratch = tempfile.TemporaryDirectory(prefix="seamloop_")
            self._logger.debug("Engine scratch directory %s", self._scratch.name)

    def close(self) -> None:
        if self._scratch is not None:
            self._scratch.cleanup()
            self._scratch = None

    @property
    def scratch_dir(self) -> Path:
        self.open()
        assert self._scratch is not None
        return Path(self._scratch.name)

    # ------------------------------------------------------------------
    def probe(self, video_path: str) -> VideoInfo:
        source = Path(video_path)
        if not source.exists():
            raise DecodeError(f"Media path does not exist: {source}")
        if not self._ffprobe:
            raise DecodeError("ffprobe executable not found in PATH")

        cmd = [
            self._ffprobe,
            "-v",
            "error",
            "-print_format",
            "json",
            "-show_streams",
            "-show_format",
            str(source),
        ]
        try:
            completed = subprocess.run(cmd, check=True, timeout=30, capture_output=True, text=True)
        except subprocess.CalledProcessError as error:
            raise DecodeError(f"ffprobe failed for {source}: {error.stderr.strip()}") from error
        except subprocess.TimeoutExpired as error:
            raise DecodeError(f"ffprobe timed out for {source}") from error

        try:
            data = json.loads(completed.stdout or "{}")
        except json.JSONDecodeError as error:
            raise DecodeError(f"ffprobe returned unreadable output for {source}") from error
        return parse_probe(data)

    def extract_frames(self, video_path: str, fps: int, width: int, max_frames: int | None = None) -> List[np.ndarray]:
        """Decode ``fps`` frames per second, scaled to ``width`` pixels wide, as RGB arrays."""
        source = Path(video_path)
        if not source.exists():
            raise DecodeError(f"Media path does not exist: {source}")
        if not self._ffmpeg:
            raise DecodeError("ffmpeg executable not found in PATH")

        frames: List[np.ndarray] = []
        with tempfile.TemporaryDirectory(prefix="frames_", dir=self.scratch_dir) as tmpdir:
            pattern = Path(tmpdir) / "frame_%05d.png"
            cmd = [
                self._ffmpeg,
                "-y",
                "-hide_banner",
                "-loglevel",
                "error",
                "-i",
                str(source),
                "-an",
                "-vf",
                f"fps={fps},scale={width}:-2",
            ]
            if max_frames:
                cmd += ["-frames:v", str(max_frames)]
            cmd.append(str(pattern))
            try:
                subprocess.run(cmd, check=True, timeout=self._timeout, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE)
            except subprocess.CalledProcessError as error:
                raise DecodeError(f"ffmpeg frame extraction failed: {error.stderr.decode().strip()}") from error
            except subprocess.TimeoutExpired as error:
                raise DecodeError(f"ffmpeg frame extraction timed out for {source}") from error

            for frame_path in sorted(Path(tmpdir).glob("frame_*.png")):
                frame_bgr = cv2.imread(str(frame_path), cv2.IMREAD_COLOR)
                if frame_bgr is None:
                    raise DecodeError(f"Unable to decode extracted frame {frame_path.name}")
                frames.append(cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2RGB))

        if not frames:
            raise DecodeError(f"No frames could be extracted from {source}")
        return frames

    def execute(
        self,
        input_path: str,
        filter_complex: str,
        output_label: str,
        output_args: Sequence[str],
        suffix: str,
        expected_duration_ms: float | None = None,
        progress: ProgressCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> bytes:
        """Run one filter pipeline over ``input_path`` and return the encoded output."""
        if not self._ffmpeg:
            raise EncodeError("ffmpeg executable not found in PATH")

        output_path = self.scratch_dir / f"output.{suffix}"
        stderr_path = self.scratch_dir / "ffmpeg.stderr"
        cmd = [
            self._ffmpeg,
            "-y",
            "-hide_banner",
            "-loglevel",
            "error",
            "-nostats",
            "-progress",
            "pipe:1",
            "-i",
            str(input_path),
            "-filter_complex",
            filter_complex,
            "-map",
            f"[{output_label}]",
            *output_args,
            str(output_path),
        ]
        self._logger.debug("Executing ffmpeg pipeline: %s", filter_complex)

        deadline = time.monotonic() + self._timeout
        with stderr_path.open("w+", encoding="utf-8") as stderr_handle:
            process = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=stderr_handle, text=True)
            lines: "queue.Queue[Optional[str]]" = queue.Queue()
            reader = threading.Thread(target=_pump_lines, args=(process.stdout, lines), daemon=True)
            reader.start()
            returncode: Optional[int] = None
            try:
                while True:
                    if cancel is not None:
                        cancel.raise_if_cancelled()
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise EncodeError(f"ffmpeg render timed out after {self._timeout:.0f}s")
                    try:
                        line = lines.get(timeout=min(remaining, POLL_INTERVAL_SEC))
                    except queue.Empty:
                        continue
                    if line is None:
                        break
                    percent = parse_progress_line(line, expected_duration_ms)
                    if percent is not None and progress is not None:
                        progress(percent, "Rendering video...")
                try:
                    returncode = process.wait(timeout=max(0.0, deadline - time.monotonic()))
                except subprocess.TimeoutExpired as error:
                    raise EncodeError(f"ffmpeg render timed out after {self._timeout:.0f}s") from error
            finally:
                if returncode is None:
                    process.kill()
                    process.wait()
                    self._logger.debug("Killed ffmpeg pipeline (pid %d)", process.pid)
                reader.join(timeout=POLL_INTERVAL_SEC)
                if not reader.is_alive() and process.stdout is not None:
                    process.stdout.close()
            stderr_handle.seek(0)
            stderr_text = stderr_handle.read().strip()

        if returncode != 0:
            raise EncodeError(f"ffmpeg exited with status {returncode}: {stderr_text[-2000:]}")
        if not output_path.exists() or output_path.stat().st_size == 0:
            raise EncodeError("ffmpeg produced no output")
        try:
            return output_path.read_bytes()
        finally:
            output_path.unlink(missing_ok=True)


def _pump_lines(stream, lines: "queue.Queue[Optional[str]]") -> None:
    try:
        for line in stream:
            lines.put(line)
    finally:
        lines.put(None)


def parse_probe(data: dict) -> VideoInfo:
    """Build ``VideoInfo`` from ffprobe's JSON document."""
    video_stream = None
    for stream in data.get("streams", []) or []:
        if stream.get("codec_type") == "video":
            video_stream = stream
            break
    if video_stream is None:
        raise DecodeError("Source has no video stream")

    try:
        width = int(video_stream.get("width") or 0)
        height = int(video_stream.get("height") or 0)
    except (TypeError, ValueError) as error:
        raise DecodeError("Video dimensions could not be determined") from error
    if width <= 0 or height <= 0:
        raise DecodeError("Video dimensions could not be determined")

    raw_duration = (data.get("format") or {}).get("duration") or video_stream.get("duration")
    try:
        duration_ms = float(raw_duration) * 1000.0 if raw_duration is not None else 0.0
    except (TypeError, ValueError):
        duration_ms = 0.0
    if duration_ms <= 0:
        raise DecodeError("Source has zero duration")

    fps: Optional[float] = None
    rate = video_stream.get("avg_frame_rate") or video_stream.get("r_frame_rate")
    if rate:
        try:
            value = Fraction(str(rate))
            fps = float(value) if value > 0 else None
        except (ValueError, ZeroDivisionError):
            fps = None

    return VideoInfo(duration_ms=duration_ms, width=width, height=height, fps=fps)


def parse_progress_line(line: str, expected_duration_ms: float | None) -> Optional[float]:
    """Translate one ``-progress`` key/value line into a percentage."""
    key, _, value = line.strip().partition("=")
    if key == "progress" and value == "end":
        return 100.0
    if key not in {"out_time_us", "out_time_ms"} or not expected_duration_ms:
        return None
    try:
        # ffmpeg reports both keys in microseconds.
        elapsed_ms = int(value) / 1000.0
    except ValueError:
        return None
    return max(0.0, min(100.0, elapsed_ms / expected_duration_ms * 100.0))


__all__ = ["TranscodeEngine", "ProgressCallback", "parse_probe", "parse_progress_line"]
