from __future__ import annotations

import importlib
import json
import os

import pytest
from fastapi.testclient import TestClient

from src.pipeline.errors import DecodeError, EncodeError
from src.pipeline.types import AnalysisResult, CandidateSubscores, LoopCandidate
from src.render.planner import plan_pipeline
from src.render.renderer import RenderOutput

CANDIDATES = [
    LoopCandidate(1000, 5000, 0.93, CandidateSubscores(0.97, 0.95, 0.02), 12, 60),
    LoopCandidate(2000, 4000, 0.81, CandidateSubscores(0.85, 0.9, 0.05), 24, 48),
]


@pytest.fixture()
def service(tmp_path, monkeypatch):
    monkeypatch.setenv("SEAMLOOP_BASE_DIR", str(tmp_path))
    monkeypatch.setenv("SEAMLOOP_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("SEAMLOOP_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("SEAMLOOP_RENDER_DIR", str(tmp_path / "renders"))

    for name in ("src.service.config", "src.service.db", "src.service.app"):
        importlib.reload(importlib.import_module(name))
    app_module = importlib.import_module("src.service.app")

    calls = {"analyze": [], "render": []}

    def fake_analyze(self, video_path, duration_ms, options, progress=None, cancel=None, engine=None):
        calls["analyze"].append((video_path, duration_ms, options))
        if video_path.endswith("broken.mp4"):
            raise DecodeError("Source has no video stream")
        if progress:
            progress(0.0, "Initializing tools...")
            progress(40.0, "Analyzing frames...")
            progress(30.0, "Analyzing frames...")
            progress(100.0, "Analysis complete!")
        return AnalysisResult(
            candidates=list(CANDIDATES),
            heatmap=[0.05] * 100,
            duration_ms=duration_ms or 10000.0,
            video_dimensions=(640, 360),
            frame_interval_ms=1000.0 / options.analysis_fps,
            summary={"frames": 120, "pairs_evaluated": 4953},
        )

    def fake_render(self, video_path, plan, progress=None, cancel=None, engine=None):
        spec = plan_pipeline(plan)
        calls["render"].append(plan)
        if video_path.endswith("encode-fails.mp4"):
            raise EncodeError("ffmpeg exited with status 1")
        if video_path.endswith("stopped.mp4"):
            app_module._cancellations.cancel("r4", "stop button")
            cancel.raise_if_cancelled()
        if progress:
            progress(50.0, "Rendering video...")
        return RenderOutput(
            buffer=b"GIF89a-fake" if plan.output_format.value == "gif" else b"\x00\x00\x00\x18ftypmp42",
            mime_type=spec.mime_type,
            duration_ms=spec.expected_duration_ms,
            filter_complex=spec.filter_complex,
        )

    monkeypatch.setattr(app_module.LoopAnalyzer, "analyze", fake_analyze)
    monkeypatch.setattr(app_module.LoopRenderer, "render", fake_render)

    return TestClient(app_module.app), calls, tmp_path


def _render_payload(mode="cut", output_format="gif", crossfade_ms=0.0, video_path="clip.mp4", **extra):
    payload = {
        "video_path": video_path,
        "plan": {
            "mode": mode,
            "candidate": CANDIDATES[0].to_dict(),
            "crossfade_ms": crossfade_ms,
            "output_format": output_format,
        },
    }
    payload.update(extra)
    return payload


def test_health(service):
    client, _, _ = service
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["service"] == "seamloop"


def test_analyze_returns_ranked_candidates_and_report(service):
    client, calls, tmp_path = service

    response = client.post(
        "/analyze",
        json={"video_path": "clip.mp4", "duration_ms": 10000, "options": {"min_loop_ms": 1500, "max_loop_ms": 8000}},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "completed"
    assert body["candidates"] == 2
    job_id = body["job_id"]

    options = calls["analyze"][0][2]
    assert options.analysis_fps == 12

    result = client.get(f"/result/{job_id}").json()
    assert [c["score"] for c in result["candidates"]] == [0.93, 0.81]
    assert result["candidates"][0]["subscores"]["ssim"] == 0.97
    assert len(result["heatmap"]) == 100
    assert result["video_dimensions"] == [640, 360]
    assert result["summary"]["pairs_evaluated"] == 4953

    status = client.get(f"/status/{job_id}").json()
    assert status == {
        "job_id": job_id,
        "kind": "analysis",
        "status": "completed",
        "percent": 100.0,
        "message": "Analysis complete!",
        "detail": None,
    }

    report = json.loads((tmp_path / "logs" / f"{job_id}.json").read_text(encoding="utf-8"))
    assert report["candidates"][0]["start_ms"] == 1000
    assert report["options"]["min_loop_ms"] == 1500

    record = client.get(f"/jobs/{job_id}").json()
    assert record["kind"] == "analysis"
    assert record["status"] == "completed"
    assert record["candidates"] == 2
    assert record["finished_at"]


def test_notifications_are_ordered_with_one_terminal(service):
    client, _, _ = service
    job_id = client.post("/analyze", json={"video_path": "clip.mp4", "job_id": "job-1"}).json()["job_id"]
    assert job_id == "job-1"

    notes = client.get("/jobs/job-1/notifications").json()
    progress = [n["percent"] for n in notes if n["type"] == "progress"]
    assert progress == [0.0, 40.0, 40.0, 100.0]
    assert [n["type"] for n in notes].count("analysis_result") == 1
    assert notes[-1]["type"] == "analysis_result"
    assert all(n["job_id"] == "job-1" for n in notes)


def test_analysis_failure_is_reported_once(service):
    client, _, _ = service

    response = client.post("/analyze", json={"video_path": "broken.mp4", "job_id": "bad"})
    assert response.status_code == 422
    assert "no video stream" in response.json()["detail"]

    notes = client.get("/jobs/bad/notifications").json()
    assert notes[-1] == {
        "type": "error",
        "job_id": "bad",
        "error_type": "DecodeError",
        "message": "Source has no video stream",
    }
    assert client.get("/status/bad").json()["status"] == "failed"
    assert client.get("/result/bad").status_code == 409
    assert client.get("/jobs/bad").json()["error"] == "Source has no video stream"


def test_invalid_loop_bounds_are_rejected(service):
    client, _, _ = service
    response = client.post("/analyze", json={"video_path": "clip.mp4", "options": {"min_loop_ms": -5}})
    assert response.status_code == 422


def test_duplicate_job_id_conflicts(service):
    client, _, _ = service
    assert client.post("/analyze", json={"video_path": "clip.mp4", "job_id": "same"}).status_code == 200
    assert client.post("/analyze", json={"video_path": "clip.mp4", "job_id": "same"}).status_code == 409


def test_render_gif_and_download(service):
    client, calls, tmp_path = service

    response = client.post("/render", json=_render_payload(mode="ping_pong", job_id="r1"))
    assert response.status_code == 200
    body = response.json()
    assert body["mime_type"] == "image/gif"
    assert body["duration_ms"] == 8000
    assert body["output_url"] == "/render/r1/output"
    assert (tmp_path / "renders" / "r1.gif").exists()

    download = client.get(body["output_url"])
    assert download.status_code == 200
    assert download.headers["content-type"] == "image/gif"
    assert download.content == b"GIF89a-fake"

    notes = client.get("/jobs/r1/notifications").json()
    assert notes[-1]["type"] == "render_result"
    assert notes[-1]["size_bytes"] == len(b"GIF89a-fake")
    assert len(calls["render"]) == 1


def test_render_config_error_skips_engine(service):
    client, calls, _ = service

    response = client.post("/render", json=_render_payload(mode="crossfade", crossfade_ms=4000, job_id="r2"))

    assert response.status_code == 400
    assert calls["render"] == []
    notes = client.get("/jobs/r2/notifications").json()
    assert notes == [
        {
            "type": "error",
            "job_id": "r2",
            "error_type": "RenderConfigError",
            "message": notes[0]["message"],
        }
    ]
    assert client.get("/status/r2").json()["status"] == "failed"


def test_encode_error_maps_to_bad_gateway(service):
    client, _, _ = service

    response = client.post("/render", json=_render_payload(video_path="encode-fails.mp4", job_id="r3"))

    assert response.status_code == 502
    assert client.get("/jobs/r3/notifications").json()[-1]["error_type"] == "EncodeError"
    assert client.get("/render/r3/output").status_code == 409


def test_stopping_a_running_render_cancels_it(service):
    client, _, _ = service

    response = client.post("/render", json=_render_payload(video_path="stopped.mp4", job_id="r4"))

    assert response.status_code == 409
    assert client.get("/status/r4").json()["status"] == "cancelled"
    notes = client.get("/jobs/r4/notifications").json()
    assert notes[-1]["error_type"] == "JobCancelled"
    assert notes[-1]["message"] == "stop button"
    assert client.get("/render/r4/output").status_code == 409


def test_render_inherits_analysis_resolution(service):
    client, calls, _ = service
    analysis_id = client.post("/analyze", json={"video_path": "clip.mp4"}).json()["job_id"]

    response = client.post(
        "/render",
        json=_render_payload(output_format="mp4", analysis_job_id=analysis_id),
    )

    assert response.status_code == 200
    assert calls["render"][0].target_resolution == (640, 360)
    assert response.json()["mime_type"] == "video/mp4"


def test_unknown_jobs_return_404(service):
    client, _, _ = service
    assert client.get("/status/nope").status_code == 404
    assert client.get("/result/nope").status_code == 404
    assert client.get("/render/nope/output").status_code == 404
    assert client.get("/jobs/nope").status_code == 404
    assert client.get("/jobs/nope/notifications").status_code == 404
    assert client.post("/jobs/nope/stop").status_code == 404


def test_stop_after_completion_is_a_no_op(service):
    client, _, _ = service
    job_id = client.post("/analyze", json={"video_path": "clip.mp4"}).json()["job_id"]

    response = client.post(f"/jobs/{job_id}/stop", json={"reason": "too late"})

    assert response.status_code == 200
    assert response.json() == {"job_id": job_id, "cancel_requested": False}


def test_job_listing_filters_by_kind(service):
    client, _, _ = service
    client.post("/analyze", json={"video_path": "clip.mp4"})
    client.post("/render", json=_render_payload())

    everything = client.get("/jobs").json()
    renders = client.get("/jobs", params={"kind": "render"}).json()

    assert {job["kind"] for job in everything} == {"analysis", "render"}
    assert [job["kind"] for job in renders] == ["render"]


def test_finished_jobs_beyond_the_cap_leave_memory(service, monkeypatch):
    client, _, _ = service
    monkeypatch.setattr(importlib.import_module("src.service.app"), "MAX_TRACKED_JOBS", 2)

    for job_id in ("a1", "a2", "a3"):
        assert client.post("/analyze", json={"video_path": "clip.mp4", "job_id": job_id}).status_code == 200

    assert client.get("/status/a1").status_code == 404
    assert client.get("/jobs/a1/notifications").status_code == 404
    assert client.get("/jobs/a1").json()["status"] == "completed"
    assert client.get("/status/a2").json()["status"] == "completed"
    assert client.get("/status/a3").json()["status"] == "completed"


def test_rotated_render_outputs_leave_memory(service, monkeypatch):
    client, _, tmp_path = service
    monkeypatch.setattr(importlib.import_module("src.service.app"), "MAX_RENDER_FILES", 1)

    assert client.post("/render", json=_render_payload(job_id="old")).status_code == 200
    os.utime(tmp_path / "renders" / "old.gif", (1_000_000, 1_000_000))
    assert client.post("/render", json=_render_payload(job_id="new")).status_code == 200

    assert not (tmp_path / "renders" / "old.gif").exists()
    assert client.get("/render/old/output").status_code == 404
    assert client.get("/jobs/old/notifications").status_code == 404
    assert client.get("/jobs/old").json()["output_path"].endswith("old.gif")
    assert client.get("/render/new/output").status_code == 200
