"""Locate generated artifacts on the shared output filesystem."""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Iterable, Optional, Sequence

from .backend.events import OutputRef
from .utils import raise_if_cancelled, wait_or_cancel

logger = logging.getLogger(__name__)

DEFAULT_EXTENSIONS = (".mp4", ".avi", ".mov", ".mkv", ".webm")


def find_recent_artifact(
    dirs: Iterable[Path],
    token: str,
    *,
    window_s: float = 600.0,
    min_age_s: float = 0.0,
    extensions: Sequence[str] = DEFAULT_EXTENSIONS,
    not_before: Optional[float] = None,
    now: Optional[float] = None,
) -> Optional[Path]:
    """Newest file whose name contains ``token`` in the first dir that has one.

    Only files modified within ``window_s`` and at least ``min_age_s`` old are
    considered, so a file still being written is not picked up. Files with an
    mtime before ``not_before`` belong to an earlier submission and are skipped.
    """
    now = time.time() if now is None else now
    token_lower = token.lower()
    exts = tuple(e.lower() for e in extensions)
    for base in dirs:
        base = Path(base)
        if not base.is_dir():
            continue
        best: Optional[Path] = None
        best_mtime = -1.0
        try:
            entries = list(base.iterdir())
        except OSError as exc:
            logger.warning("Cannot list %s: %s", base, exc)
            continue
        for entry in entries:
            name = entry.name.lower()
            if not name.endswith(exts) or token_lower not in name:
                continue
            try:
                st = entry.stat()
            except OSError:
                continue
            if not entry.is_file():
                continue
            age = now - st.st_mtime
            if age > window_s or age < min_age_s:
                continue
            if not_before is not None and st.st_mtime < not_before:
                continue
            if st.st_mtime > best_mtime:
                best, best_mtime = entry, st.st_mtime
        if best is not None:
            logger.info("Found artifact %s", best)
            return best
    return None


def wait_for_artifact(
    dirs: Sequence[Path],
    token: str,
    *,
    timeout_s: float,
    poll_s: float = 1.0,
    window_s: float = 600.0,
    min_age_s: float = 0.0,
    extensions: Sequence[str] = DEFAULT_EXTENSIONS,
    not_before: Optional[float] = None,
    cancel: Optional[threading.Event] = None,
) -> Optional[Path]:
    """Poll :func:`find_recent_artifact` until it hits or ``timeout_s`` passes."""
    deadline = time.monotonic() + max(0.0, timeout_s)
    while True:
        raise_if_cancelled(cancel, "artifact probe")
        found = find_recent_artifact(
            dirs, token, window_s=window_s, min_age_s=min_age_s, extensions=extensions, not_before=not_before
        )
        if found is not None:
            return found
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            logger.warning("No artifact matching %r after %.0fs", token, timeout_s)
            return None
        wait_or_cancel(min(poll_s, remaining), cancel, "artifact probe")


def resolve_output_path(ref: OutputRef, base_dirs: Sequence[Path]) -> Optional[Path]:
    """Map a completion's output reference onto a local path.

    ``base/subfolder/filename`` wins, then ``base/filename``; if neither exists
    in any dir, ``first_dir/filename`` is assumed.
    """
    if not base_dirs:
        return None
    for base in base_dirs:
        base = Path(base)
        if ref.subfolder:
            candidate = base / ref.subfolder / ref.filename
            if candidate.exists():
                return candidate
        candidate = base / ref.filename
        if candidate.exists():
            return candidate
    return Path(base_dirs[0]) / ref.filename
