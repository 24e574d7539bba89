"""
Storage helpers for the Rainloop backend.

Finished outputs live under OUTPUT_BASE as <job_id>.mp4 until the next run
replaces them; nothing else is persisted.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import List, Optional

OUTPUT_BASE = Path(os.getenv("OUTPUT_BASE", "outputs"))
OUTPUT_SUFFIX = ".mp4"

_JOB_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def ensure_output_dir() -> Path:
    OUTPUT_BASE.mkdir(parents=True, exist_ok=True)
    return OUTPUT_BASE


def resolve_output(job_id: str) -> Path:
    if not _JOB_ID_RE.match(job_id or ""):
        raise ValueError(f"invalid job id: {job_id!r}")
    return OUTPUT_BASE / f"{job_id}{OUTPUT_SUFFIX}"


def pending_output(job_id: str) -> Path:
    """Where a running job writes its result before commit_output publishes it."""
    ensure_output_dir()
    target = resolve_output(job_id)
    return target.with_suffix(target.suffix + ".tmp")


def commit_output(job_id: str, pending: Path) -> Path:
    target = resolve_output(job_id)
    os.replace(pending, target)
    return target


def find_output(job_id: str) -> Optional[Path]:
    try:
        target = resolve_output(job_id)
    except ValueError:
        return None
    if target.exists() and target.is_file():
        return target
    return None


def list_outputs() -> List[Path]:
    if not OUTPUT_BASE.exists():
        return []
    return sorted(OUTPUT_BASE.glob(f"*{OUTPUT_SUFFIX}"))


def clear_outputs(keep: Optional[str] = None) -> int:
    """Best-effort removal of previous results; returns how many were removed."""
    removed = 0
    for path in list_outputs():
        if keep and path.stem == keep:
            continue
        try:
            path.unlink()
            removed += 1
        except OSError:
            pass
    return removed


__all__ = [
    "OUTPUT_BASE",
    "clear_outputs",
    "commit_output",
    "ensure_output_dir",
    "find_output",
    "list_outputs",
    "pending_output",
    "resolve_output",
]
