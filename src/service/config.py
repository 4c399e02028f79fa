"""Runtime configuration for the SeamLoop service."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Tuple

_BASE_DIR = Path(os.environ.get("SEAMLOOP_BASE_DIR", ".")).resolve()

DATA_DIR = Path(os.environ.get("SEAMLOOP_DATA_DIR", _BASE_DIR / "data")).resolve()
LOG_DIR = Path(os.environ.get("SEAMLOOP_LOG_DIR", _BASE_DIR / "logs")).resolve()
RENDER_DIR = Path(os.environ.get("SEAMLOOP_RENDER_DIR", _BASE_DIR / "renders")).resolve()

ANALYSIS_FPS = int(os.environ.get("SEAMLOOP_ANALYSIS_FPS", "12"))
ANALYSIS_WIDTH = int(os.environ.get("SEAMLOOP_ANALYSIS_WIDTH", "320"))
TOP_K = int(os.environ.get("SEAMLOOP_TOP_K", "10"))
PRUNE_THRESHOLD = float(os.environ.get("SEAMLOOP_PRUNE_THRESHOLD", "0.6"))
HEATMAP_BUCKETS = int(os.environ.get("SEAMLOOP_HEATMAP_BUCKETS", "100"))
SEARCH_WORKERS = int(os.environ.get("SEAMLOOP_SEARCH_WORKERS", "1"))
ENGINE_TIMEOUT_SEC = float(os.environ.get("SEAMLOOP_ENGINE_TIMEOUT_SEC", "600"))
JOB_TIMEOUT_MS = int(os.environ.get("SEAMLOOP_JOB_TIMEOUT_MS", "0"))

MAX_LOG_FILES = int(os.environ.get("SEAMLOOP_MAX_LOG_FILES", "500"))
MAX_LOG_BYTES = int(os.environ.get("SEAMLOOP_MAX_LOG_BYTES", str(200 * 1024 * 1024)))
MAX_RENDER_FILES = int(os.environ.get("SEAMLOOP_MAX_RENDER_FILES", "50"))
MAX_RENDER_BYTES = int(os.environ.get("SEAMLOOP_MAX_RENDER_BYTES", str(1024 * 1024 * 1024)))
# Finished jobs kept in memory; older ones remain queryable through the sqlite history.
MAX_TRACKED_JOBS = int(os.environ.get("SEAMLOOP_MAX_TRACKED_JOBS", "1000"))


def ensure_dirs() -> Tuple[Path, Path]:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    RENDER_DIR.mkdir(parents=True, exist_ok=True)
    return DATA_DIR, LOG_DIR


__all__ = [
    "DATA_DIR",
    "LOG_DIR",
    "RENDER_DIR",
    "ANALYSIS_FPS",
    "ANALYSIS_WIDTH",
    "TOP_K",
    "PRUNE_THRESHOLD",
    "HEATMAP_BUCKETS",
    "SEARCH_WORKERS",
    "ENGINE_TIMEOUT_SEC",
    "JOB_TIMEOUT_MS",
    "MAX_LOG_FILES",
    "MAX_LOG_BYTES",
    "MAX_RENDER_FILES",
    "MAX_RENDER_BYTES",
    "ensure_dirs",
]
