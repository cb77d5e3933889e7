"""Join ordered chunk artifacts into one video with ffmpeg's concat demuxer."""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from .config import StitchSettings
from .errors import OperationCancelled, StitchError
from .media import _require_cmd
from .utils import raise_if_cancelled, subprocess_flags as _subprocess_flags

logger = logging.getLogger(__name__)

StatusFn = Callable[[str], None]


def _escape_concat_path(p: Path) -> str:
    # concat list entries are single-quoted; a quote is closed, escaped, reopened.
    return str(Path(p).resolve()).replace("\\", "/").replace("'", "'\\''")


def write_concat_list(artifacts: Sequence[Path], list_path: Path) -> Path:
    lines = [f"file '{_escape_concat_path(p)}'" for p in artifacts]
    list_path.parent.mkdir(parents=True, exist_ok=True)
    list_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return list_path


def build_concat_command(ffmpeg: str, list_path: Path, output_path: Path, *, reencode: bool = False) -> List[str]:
    cmd = [ffmpeg, "-hide_banner", "-loglevel", "error", "-f", "concat", "-safe", "0", "-i", str(list_path)]
    if reencode:
        cmd += ["-c:v", "libx264", "-c:a", "aac", "-crf", "23"]
    else:
        cmd += ["-c", "copy"]
    cmd += [str(output_path), "-y"]
    return cmd


class OutputStitcher:
    def __init__(self, settings: Optional[StitchSettings] = None, *, poll_s: float = 0.5):
        self.settings = settings or StitchSettings()
        self.poll_s = poll_s

    def stitch(
        self,
        artifacts: Sequence[Path],
        destination: Path,
        *,
        cancel: Optional[threading.Event] = None,
        on_status: Optional[StatusFn] = None,
    ) -> Path:
        """Concatenate ``artifacts`` in the given order into ``destination``.

        A single artifact is returned as-is without running ffmpeg. Stream copy
        is tried first; on failure the inputs are re-encoded when
        ``reencode_fallback`` is set. Input files are never deleted.

        Raises:
            StitchError: no inputs, a missing input, or ffmpeg failing/timing out
            OperationCancelled: when ``cancel`` is set
        """
        paths = [Path(p) for p in artifacts]
        if not paths:
            raise StitchError("No chunk artifacts to stitch")
        missing = [p for p in paths if not p.exists()]
        if missing:
            raise StitchError(f"Missing chunk artifacts: {', '.join(str(p) for p in missing)}")
        if len(paths) == 1:
            logger.info("Single artifact; nothing to stitch: %s", paths[0])
            return paths[0]

        raise_if_cancelled(cancel, "stitch")
        _require_cmd(self.settings.ffmpeg)
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        list_path = destination.with_name(f"{destination.stem}_concat.txt")
        write_concat_list(paths, list_path)

        def status(msg: str) -> None:
            logger.info(msg)
            if on_status is not None:
                on_status(msg)

        try:
            status(f"Joining {len(paths)} chunks (stream copy)")
            code, err = self._run_ffmpeg(
                build_concat_command(self.settings.ffmpeg, list_path, destination),
                self.settings.copy_timeout_s,
                cancel,
            )
            if code != 0:
                logger.warning("Stream-copy concat failed (exit=%s): %s", code, err)
                if not self.settings.reencode_fallback:
                    raise StitchError(f"ffmpeg concat failed (exit={code}). {err}")
                status(f"Re-encoding {len(paths)} chunks")
                code, err = self._run_ffmpeg(
                    build_concat_command(self.settings.ffmpeg, list_path, destination, reencode=True),
                    self.settings.reencode_timeout_s,
                    cancel,
                )
                if code != 0:
                    raise StitchError(f"ffmpeg re-encode failed (exit={code}). {err}")
        finally:
            try:
                list_path.unlink()
            except FileNotFoundError:
                pass

        if not destination.exists():
            raise StitchError(f"ffmpeg reported success but {destination} was not written")
        status(f"Stitched {len(paths)} chunks into {destination}")
        return destination

    def _run_ffmpeg(self, cmd: List[str], timeout_s: float, cancel: Optional[threading.Event]) -> Tuple[int, str]:
        """Run ``cmd``, killing it on timeout or cancel. Returns (exit code, stderr)."""
        logger.debug("Running %s", " ".join(cmd))
        proc = subprocess.Popen(
            cmd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            text=True,
            **_subprocess_flags(),
        )
        deadline = time.monotonic() + timeout_s
        try:
            while True:
                try:
                    _, err = proc.communicate(timeout=self.poll_s)
                    return proc.returncode, (err or "").strip()[-2000:]
                except subprocess.TimeoutExpired:
                    pass
                if cancel is not None and cancel.is_set():
                    raise OperationCancelled("stitch cancelled")
                if time.monotonic() >= deadline:
                    raise StitchError(f"ffmpeg timed out after {timeout_s:.0f}s")
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.communicate()
