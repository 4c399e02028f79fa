#!/usr/bin/env python3
"""Command-line client for the SeamLoop job service."""
from __future__ import annotations

import argparse
import json
import os
import sys
import time
import uuid
from pathlib import Path
from typing import Dict, List, Optional

import requests

from src.service.protocol import (
    AnalysisResultNotification,
    ErrorNotification,
    JobBoundary,
    NotificationHandlers,
    ProgressNotification,
    RenderResultNotification,
    parse_notification,
)

SERVICE_URL_ENV = "SEAMLOOP_SERVICE_URL"
SERVICE_URL_DEFAULT = "http://127.0.0.1:8765"
RETRY_ATTEMPTS = 3
HTTP_TIMEOUT_DEFAULT = int(os.getenv("SEAMLOOP_HTTP_TIMEOUT", "60"))
# Analysis and render requests block until the job finishes.
JOB_TIMEOUT_DEFAULT = int(os.getenv("SEAMLOOP_CLIENT_JOB_TIMEOUT", str(15 * 60)))
PREVIEW_LIMIT = 5


class JobFailed(RuntimeError):
    """Raised when the service reports a terminal error for a job."""

    def __init__(self, job_id: str, error_type: str, message: str) -> None:
        super().__init__(f"{error_type}: {message}")
        self.job_id = job_id
        self.error_type = error_type


def _detail(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text
    if isinstance(payload, dict) and "detail" in payload:
        return str(payload["detail"])
    return json.dumps(payload)


def post_with_retry(url: str, payload: dict, connect_timeout: int, read_timeout: int) -> requests.Response:
    """POST ``payload``; connection failures are retried, HTTP errors are not."""
    for attempt in range(RETRY_ATTEMPTS):
        try:
            response = requests.post(url, json=payload, timeout=(connect_timeout, read_timeout))
        except (requests.ConnectionError, requests.Timeout) as error:
            wait_time = 2 ** attempt
            print(f"[WARN] POST failed ({error}); retrying in {wait_time}s", file=sys.stderr)
            time.sleep(wait_time)
            continue
        return response
    raise RuntimeError(f"Failed to reach {url} after {RETRY_ATTEMPTS} attempts")


def fetch_notifications(base_url: str, job_id: str, timeout_sec: int) -> list:
    response = requests.get(f"{base_url}/jobs/{job_id}/notifications", timeout=(timeout_sec, timeout_sec))
    response.raise_for_status()
    return [parse_notification(entry) for entry in response.json()]


def stop_remote_job(service_url: str, job_id: str, timeout_sec: int, reason: Optional[str] = None) -> None:
    payload = {"reason": reason} if reason else None
    try:
        response = requests.post(
            f"{service_url}/jobs/{job_id}/stop",
            json=payload,
            timeout=(timeout_sec, timeout_sec),
        )
        response.raise_for_status()
        print(f"Requested stop for job {job_id}: {response.json().get('cancel_requested')}")
    except requests.RequestException as error:
        print(f"[WARN] Failed to stop job {job_id}: {error}", file=sys.stderr)


def list_remote_jobs(base_url: str, limit: int, timeout_sec: int) -> None:
    response = requests.get(f"{base_url}/jobs", params={"limit": limit}, timeout=(timeout_sec, timeout_sec))
    response.raise_for_status()
    jobs = response.json()
    if not jobs:
        print("No jobs recorded yet.")
        return
    for job in jobs:
        print(
            f"{job.get('id')} {job.get('kind'):<8} {job.get('status'):<9} "
            f"created={job.get('created_at')} finished={job.get('finished_at') or '-'} "
            f"candidates={job.get('candidates') if job.get('candidates') is not None else '-'} "
            f"output={job.get('output_path') or '-'}"
        )


def show_remote_job(base_url: str, job_id: str, timeout_sec: int) -> None:
    response = requests.get(f"{base_url}/jobs/{job_id}", timeout=(timeout_sec, timeout_sec))
    if response.status_code == 404:
        print(f"Job {job_id} not found")
        return
    response.raise_for_status()
    print(json.dumps(response.json(), indent=2, ensure_ascii=False))


class ClientSession:
    """Tracks the current job and routes its notifications."""

    def __init__(self, base_url: str, http_timeout: int, job_timeout: int) -> None:
        self.base_url = base_url
        self.http_timeout = http_timeout
        self.job_timeout = job_timeout
        self.boundary = JobBoundary()
        self.analysis: Optional[AnalysisResultNotification] = None
        self.render: Optional[RenderResultNotification] = None
        self.error: Optional[ErrorNotification] = None
        self.handlers = NotificationHandlers(
            on_progress=self._on_progress,
            on_analysis_result=self._on_analysis_result,
            on_render_result=self._on_render_result,
            on_error=self._on_error,
        )

    def _on_progress(self, notification: ProgressNotification) -> None:
        print(f"  [{notification.percent:5.1f}%] {notification.message}")

    def _on_analysis_result(self, notification: AnalysisResultNotification) -> None:
        self.analysis = notification

    def _on_render_result(self, notification: RenderResultNotification) -> None:
        self.render = notification

    def _on_error(self, notification: ErrorNotification) -> None:
        self.error = notification

    def _submit(self, path: str, payload: dict) -> str:
        job_id = payload.setdefault("job_id", uuid.uuid4().hex)
        self.boundary.begin(job_id)
        self.error = None
        response = post_with_retry(f"{self.base_url}{path}", payload, self.http_timeout, self.job_timeout)
        for notification in fetch_notifications(self.base_url, job_id, self.http_timeout):
            self.boundary.dispatch(notification, self.handlers)
        if self.error is not None:
            raise JobFailed(job_id, self.error.error_type, self.error.message)
        if response.status_code >= 400:
            raise RuntimeError(f"{path} failed with HTTP {response.status_code}: {_detail(response)}")
        return job_id

    def analyze(self, video_path: str, duration_ms: Optional[float], options: Dict[str, object]) -> str:
        payload = {"video_path": video_path, "duration_ms": duration_ms, "options": options}
        return self._submit("/analyze", payload)

    def render_candidate(
        self,
        video_path: str,
        candidate: dict,
        mode: str,
        output_format: str,
        crossfade_ms: float,
        analysis_job_id: Optional[str],
    ) -> str:
        payload = {
            "video_path": video_path,
            "analysis_job_id": analysis_job_id,
            "plan": {
                "mode": mode,
                "candidate": candidate,
                "crossfade_ms": crossfade_ms,
                "output_format": output_format,
            },
        }
        return self._submit("/render", payload)

    def download(self, output_url: str, destination: Path) -> Path:
        response = requests.get(f"{self.base_url}{output_url}", timeout=(self.http_timeout, self.http_timeout))
        response.raise_for_status()
        destination.write_bytes(response.content)
        return destination


def _print_candidates(candidates: List[dict]) -> None:
    if not candidates:
        print("No loop candidates found.")
        return
    print(f"Found {len(candidates)} loop candidates:")
    for index, candidate in enumerate(candidates[:PREVIEW_LIMIT]):
        subscores = candidate["subscores"]
        print(
            f"  #{index}: {candidate['start_ms']:.0f}-{candidate['end_ms']:.0f}ms "
            f"score={candidate['score']:.3f} (ssim={subscores['ssim']:.3f} "
            f"hist={subscores['hist_similarity']:.3f} flow={subscores['flow_error']:.4f})"
        )
    if len(candidates) > PREVIEW_LIMIT:
        print(f"  ... {len(candidates) - PREVIEW_LIMIT} more")


def run(args: argparse.Namespace, service_url: str) -> int:
    session = ClientSession(service_url, args.http_timeout, args.job_timeout)
    options: Dict[str, object] = {"min_loop_ms": args.min_loop_ms, "max_loop_ms": args.max_loop_ms}
    if args.analysis_fps:
        options["analysis_fps"] = args.analysis_fps
    if args.top_k:
        options["top_k"] = args.top_k

    print(f"Analyzing {args.video}...")
    analysis_job = session.analyze(args.video, args.duration_ms, options)
    if session.analysis is None:
        raise RuntimeError(f"Analysis job {analysis_job} finished without a result")
    candidates = [candidate.model_dump() for candidate in session.analysis.candidates]
    _print_candidates(candidates)

    if args.report:
        report_path = Path(args.report)
        report_path.parent.mkdir(parents=True, exist_ok=True)
        report_path.write_text(
            json.dumps(session.analysis.model_dump(), indent=2, ensure_ascii=False),
            encoding="utf-8",
        )
        print(f"Saved analysis to {report_path}")

    if args.render is None:
        return 0
    if not candidates:
        print("[WARN] Nothing to render", file=sys.stderr)
        return 1
    if args.render >= len(candidates):
        print(f"[WARN] Candidate #{args.render} does not exist", file=sys.stderr)
        return 1

    print(f"Rendering candidate #{args.render} as {args.mode}/{args.format}...")
    render_job = session.render_candidate(
        args.video,
        candidates[args.render],
        args.mode,
        args.format,
        args.crossfade_ms,
        analysis_job,
    )
    if session.render is None:
        raise RuntimeError(f"Render job {render_job} finished without a result")
    destination = Path(args.output or f"{Path(args.video).stem}_loop.{args.format}")
    destination.parent.mkdir(parents=True, exist_ok=True)
    session.download(session.render.output_url, destination)
    print(f"Saved {session.render.size_bytes} bytes ({session.render.mime_type}) to {destination}")
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Find and render seamless loops with the SeamLoop service")
    parser.add_argument("video", nargs="?", help="Path of the source video as seen by the service")
    parser.add_argument(
        "--service-url",
        default=None,
        help="Base URL for the service (default: env SEAMLOOP_SERVICE_URL or http://127.0.0.1:8765)",
    )
    parser.add_argument("--duration-ms", type=float, default=None, help="Source duration (default: probed)")
    parser.add_argument("--min-loop-ms", type=float, default=1500.0, help="Shortest loop (default: 1500)")
    parser.add_argument("--max-loop-ms", type=float, default=8000.0, help="Longest loop (default: 8000)")
    parser.add_argument("--analysis-fps", type=int, default=None, help="Sampling rate (default: service setting)")
    parser.add_argument("--top-k", type=int, default=None, help="Number of candidates (default: service setting)")
    parser.add_argument("--report", type=str, default=None, help="Write the analysis result as JSON to this path")
    parser.add_argument(
        "--render",
        type=int,
        default=None,
        metavar="INDEX",
        help="Render the candidate at this rank after analysis",
    )
    parser.add_argument(
        "--mode",
        choices=["cut", "crossfade", "ping_pong", "flow_morph"],
        default="cut",
        help="Seam strategy used when rendering (default: cut)",
    )
    parser.add_argument("--format", choices=["mp4", "webm", "gif"], default="mp4", help="Output format")
    parser.add_argument("--crossfade-ms", type=float, default=0.0, help="Transition length for crossfade/flow_morph")
    parser.add_argument("--output", type=str, default=None, help="Where to save the rendered loop")
    parser.add_argument(
        "--http-timeout",
        type=int,
        default=HTTP_TIMEOUT_DEFAULT,
        help=f"HTTP timeout in seconds (default: {HTTP_TIMEOUT_DEFAULT})",
    )
    parser.add_argument(
        "--job-timeout",
        type=int,
        default=JOB_TIMEOUT_DEFAULT,
        help=f"Seconds to wait for a job to finish (default: {JOB_TIMEOUT_DEFAULT})",
    )
    parser.add_argument("--list-jobs", action="store_true", help="List recent jobs and exit")
    parser.add_argument("--jobs-limit", type=int, default=20, help="Number of jobs to list (default: 20)")
    parser.add_argument("--job-id", type=str, default=None, help="Show details for a job and exit")
    parser.add_argument("--stop-job-id", type=str, default=None, help="Request cancellation of a running job")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    service_url = args.service_url or os.environ.get(SERVICE_URL_ENV, SERVICE_URL_DEFAULT)
    service_url = service_url.rstrip("/")

    if args.stop_job_id:
        stop_remote_job(service_url, args.stop_job_id, args.http_timeout, reason="manual stop command")
        return 0

    if args.list_jobs:
        list_remote_jobs(service_url, max(1, args.jobs_limit), args.http_timeout)
        if args.job_id:
            show_remote_job(service_url, args.job_id, args.http_timeout)
        return 0

    if args.job_id:
        show_remote_job(service_url, args.job_id, args.http_timeout)
        return 0

    if not args.video:
        print("[ERROR] A video path is required", file=sys.stderr)
        return 2

    try:
        return run(args, service_url)
    except JobFailed as error:
        print(f"[ERROR] Job {error.job_id} failed: {error}", file=sys.stderr)
        return 1
    except (RuntimeError, requests.RequestException) as error:
        print(f"[ERROR] {error}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
