#!/usr/bin/env python3
import os, sys, shutil, subprocess, traceback

def ok(msg): print("[OK] " + msg)
def warn(msg): print("[WARN] " + msg)
def fail(msg): print("[FAIL] " + msg); sys.exit(1)

# 1) OpenCV
try:
    import cv2  # noqa
    ok(f"OpenCV {cv2.__version__} import is available")
except Exception:
    traceback.print_exc()
    fail("OpenCV not available. Install via: pip install opencv-python-headless")

# 2) ffmpeg / ffprobe
for tool in ("ffmpeg", "ffprobe"):
    if shutil.which(tool):
        ok(f"{tool} found in PATH")
    else:
        fail(f"{tool} not found in PATH. Install via: brew install ffmpeg")

# 3) Filters used by the render modes
ffmpeg = shutil.which("ffmpeg")
try:
    filters = subprocess.run([ffmpeg, "-hide_banner", "-filters"], capture_output=True, text=True, timeout=30).stdout
    for name in ("xfade", "minterpolate", "palettegen", "paletteuse", "reverse"):
        if f" {name} " in filters:
            ok(f"ffmpeg filter {name} available")
        else:
            warn(f"ffmpeg filter {name} missing; some render modes will fail")
except (OSError, subprocess.SubprocessError):
    traceback.print_exc()
    warn("Could not list ffmpeg filters")

# 4) Ensure folders
base = os.path.abspath(os.environ.get("SEAMLOOP_BASE_DIR", "."))
for sub in ("data", "logs", "renders"):
    p = os.path.join(base, sub)
    os.makedirs(p, exist_ok=True)
ok(f"Folders ensured at {base}")

print("\nEnvironment check passed ✅")
