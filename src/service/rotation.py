"""Rotation helpers for SeamLoop reports and rendered outputs."""
from __future__ import annotations

from pathlib import Path
from typing import Collection, Iterable, List

REPORT_SUFFIXES = frozenset({".json"})
RENDER_SUFFIXES = frozenset({".mp4", ".webm", ".gif"})


def _collect_files(directory: Path, suffixes: Collection[str]) -> List[Path]:
    candidates: List[Path] = []
    if not directory.exists():
        return candidates
    for entry in directory.iterdir():
        if not entry.is_file():
            continue
        if entry.suffix.lower() not in suffixes:
            continue
        candidates.append(entry)
    return candidates


def enforce_rotation(
    directory: Path,
    max_files: int,
    max_bytes: int,
    suffixes: Collection[str] = REPORT_SUFFIXES,
) -> List[Path]:
    """Delete the oldest matching files until both limits hold.

    A limit of zero or less disables that check. Returns the removed paths.
    """
    removed: List[Path] = []
    if max_files <= 0 and max_bytes <= 0:
        return removed

    files = _collect_files(directory, suffixes)
    if not files:
        return removed

    files.sort(key=lambda path: path.stat().st_mtime)

    if max_files > 0:
        while len(files) > max_files:
            victim = files.pop(0)
            try:
                victim.unlink()
            except FileNotFoundError:
                continue
            except OSError:
                files.append(victim)
                break
            removed.append(victim)

    if max_bytes > 0:
        def total_size(paths: Iterable[Path]) -> int:
            size = 0
            for path in paths:
                try:
                    size += path.stat().st_size
                except OSError:
                    continue
            return size

        current_size = total_size(files)
        while files and current_size > max_bytes:
            victim = files.pop(0)
            try:
                size_before = victim.stat().st_size
            except OSError:
                size_before = 0
            try:
                victim.unlink()
            except FileNotFoundError:
                current_size -= size_before
                continue
            except OSError:
                files.append(victim)
                break
            removed.append(victim)
            current_size -= size_before
    return removed


def enforce_log_rotation(log_dir: Path, max_files: int, max_bytes: int) -> List[Path]:
    return enforce_rotation(log_dir, max_files, max_bytes, REPORT_SUFFIXES)


def enforce_render_rotation(render_dir: Path, max_files: int, max_bytes: int) -> List[Path]:
    return enforce_rotation(render_dir, max_files, max_bytes, RENDER_SUFFIXES)


__all__ = [
    "REPORT_SUFFIXES",
    "RENDER_SUFFIXES",
    "enforce_rotation",
    "enforce_log_rotation",
    "enforce_render_rotation",
]
