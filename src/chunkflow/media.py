from __future__ import annotations

import json
import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from .utils import subprocess_flags as _subprocess_flags

logger = logging.getLogger(__name__)

MAX_SIDE = 832
MIN_SIDE = 256
STABLE_RESOLUTIONS: Tuple[Tuple[int, int], ...] = (
    (256, 256),
    (320, 320),
    (384, 384),
    (448, 448),
    (512, 512),
    (576, 576),
    (640, 640),
    (704, 704),
    (768, 768),
    (832, 832),
)


def _require_cmd(cmd: str) -> str:
    path = shutil.which(cmd)
    if not path:
        raise RuntimeError(
            f"Required executable '{cmd}' not found in PATH. "
            "Install ffmpeg/ffprobe and ensure they are available on PATH."
        )
    return path


@dataclass(frozen=True)
class VideoInfo:
    width: int
    height: int
    fps: float
    duration_s: float

    @property
    def total_frames(self) -> int:
        return int(self.duration_s * self.fps)


def ffprobe_duration_seconds(video_path: Path) -> float:
    _require_cmd("ffprobe")
    cmd = [
        "ffprobe",
        "-v",
        "error",
        "-show_entries",
        "format=duration",
        "-of",
        "default=noprint_wrappers=1:nokey=1",
        str(Path(video_path)),
    ]
    out = subprocess.check_output(cmd, text=True, **_subprocess_flags()).strip()
    try:
        return float(out)
    except ValueError as e:
        raise RuntimeError(f"ffprobe returned non-numeric duration: {out!r}") from e


def _parse_ffprobe_fps(rate: str) -> Optional[float]:
    if not rate:
        return None
    if "/" in rate:
        num, den = rate.split("/", 1)
        try:
            num_f = float(num)
            den_f = float(den)
        except ValueError:
            return None
        if den_f == 0:
            return None
        return num_f / den_f
    try:
        return float(rate)
    except ValueError:
        return None


def _first_stream(path: Path, entries: str) -> dict:
    _require_cmd("ffprobe")
    cmd = [
        "ffprobe",
        "-v",
        "error",
        "-select_streams",
        "v:0",
        "-show_entries",
        entries,
        "-print_format",
        "json",
        str(Path(path)),
    ]
    out = subprocess.check_output(cmd, text=True, **_subprocess_flags())
    data = json.loads(out)
    streams = data.get("streams") or []
    if not streams:
        raise RuntimeError(f"ffprobe found no video streams in {path}")
    return streams[0]


def ffprobe_video_stream_info(video_path: Path) -> dict:
    stream = _first_stream(video_path, "stream=width,height,avg_frame_rate,r_frame_rate")
    width = int(stream.get("width") or 0)
    height = int(stream.get("height") or 0)
    fps = _parse_ffprobe_fps(stream.get("avg_frame_rate") or "") or _parse_ffprobe_fps(stream.get("r_frame_rate") or "")
    if not fps:
        fps = 30.0
    return {"width": width, "height": height, "fps": float(fps)}


def probe_video(video_path: Path) -> VideoInfo:
    """Width, height, fps and duration of the first video stream."""
    info = ffprobe_video_stream_info(video_path)
    duration = ffprobe_duration_seconds(video_path)
    video = VideoInfo(width=info["width"], height=info["height"], fps=info["fps"], duration_s=duration)
    logger.info(
        "Probed %s: %dx%d, %.2ffps, %.1fs, %d frames",
        Path(video_path).name,
        video.width,
        video.height,
        video.fps,
        video.duration_s,
        video.total_frames,
    )
    return video


def count_frames(video_path: Path) -> int:
    return probe_video(video_path).total_frames


def ffprobe_image_size(image_path: Path) -> Tuple[int, int]:
    # ffprobe reports still images as a single-frame video stream.
    stream = _first_stream(image_path, "stream=width,height")
    width = int(stream.get("width") or 0)
    height = int(stream.get("height") or 0)
    if width <= 0 or height <= 0:
        raise RuntimeError(f"ffprobe returned no dimensions for {image_path}")
    return width, height


def target_resolution(width: int, height: int) -> Tuple[int, int]:
    """Scale ``width`` x ``height`` into the generator's memory-safe range.

    Fits within 832x832, rounds each side down to a multiple of 8 with a floor
    of 256, then snaps to the largest stable square that fits.
    """
    if width <= 0 or height <= 0:
        raise ValueError("width and height must be > 0")
    scale = min(MAX_SIDE / width, MAX_SIDE / height)
    target_w = max((int(width * scale) // 8) * 8, MIN_SIDE)
    target_h = max((int(height * scale) // 8) * 8, MIN_SIDE)

    fitting = [r for r in STABLE_RESOLUTIONS if r[0] <= target_w and r[1] <= target_h]
    if fitting:
        target_w, target_h = max(fitting, key=lambda r: r[0] * r[1])
    logger.info("Target resolution %dx%d (from %dx%d)", target_w, target_h, width, height)
    return target_w, target_h
