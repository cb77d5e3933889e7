"""Profile loading and typed settings.

A profile is a YAML mapping with ``backend``, ``chunks``, ``stitch`` and
``payload`` sections. Missing keys fall back to :func:`default_profile`.
"""

from __future__ import annotations

import copy
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

BACKEND_URL_ENV = "CHUNKFLOW_BACKEND_URL"


def default_profile() -> Dict[str, Any]:
    return {
        "backend": {
            "base_url": "http://127.0.0.1:8188",
            "connection_timeout_s": 10.0,
            "max_retries": 3,
            "retry_delay_s": 2.0,
            "malformed_frame_limit": 50,
            "event_queue_size": 1000,
            # Network share first, local ComfyUI output second.
            "output_dirs": [],
        },
        "chunks": {
            "chunk_size": 49,
            "settle_before_chunk_s": 5.0,
            "settle_after_chunk_s": 5.0,
            "chunk_timeout_s": 180.0,
            "job_timeout_s": 1800.0,
            "fallback_after_s": 60.0,
            "confirm_interval_s": 10.0,
            "artifact_timeout_s": 30.0,
            "artifact_window_s": 600.0,
            "artifact_min_age_s": 2.0,
            "artifact_clock_skew_s": 2.0,
            "artifact_extensions": [".mp4", ".avi", ".mov", ".mkv", ".webm"],
            "output_subfolder": "",
            "output_prefix_format": "{stem}_chunk{number:02d}",
        },
        "stitch": {
            "ffmpeg": "ffmpeg",
            "reencode_fallback": True,
            "copy_timeout_s": 600.0,
            "reencode_timeout_s": 900.0,
            "final_name_format": "{stem}_final.mp4",
        },
        "payload": {
            "template": None,
            # logical field name -> list of "node/inputs/key" paths
            "fields": {},
            # static values written on every chunk (prompt text and the like)
            "values": {},
        },
    }


def _merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = copy.deepcopy(value)
    return out


def load_profile(profile_path: Optional[Path]) -> Dict[str, Any]:
    """Load a YAML profile merged over the defaults.

    ``CHUNKFLOW_BACKEND_URL`` overrides ``backend.base_url`` when set.
    """
    profile = default_profile()
    if profile_path is not None:
        profile_path = Path(profile_path)
        if not profile_path.exists():
            raise FileNotFoundError(f"Profile not found: {profile_path}")

        data = yaml.safe_load(profile_path.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ValueError("Profile YAML must be a mapping")
        profile = _merge(profile, data)

    env_url = os.getenv(BACKEND_URL_ENV)
    if env_url:
        profile["backend"]["base_url"] = env_url.strip()
    return profile


@dataclass(frozen=True)
class BackendSettings:
    base_url: str = "http://127.0.0.1:8188"
    connection_timeout_s: float = 10.0
    max_retries: int = 3
    retry_delay_s: float = 2.0
    malformed_frame_limit: int = 50
    event_queue_size: int = 1000
    output_dirs: Tuple[Path, ...] = ()

    @property
    def ws_url(self) -> str:
        url = self.base_url.rstrip("/")
        if url.startswith("https://"):
            return "wss://" + url[len("https://"):]
        if url.startswith("http://"):
            return "ws://" + url[len("http://"):]
        return url

    @classmethod
    def from_profile(cls, profile: Mapping[str, Any]) -> "BackendSettings":
        cfg = profile.get("backend", {}) or {}
        return cls(
            base_url=str(cfg.get("base_url", cls.base_url)).rstrip("/"),
            connection_timeout_s=float(cfg.get("connection_timeout_s", cls.connection_timeout_s)),
            max_retries=max(1, int(cfg.get("max_retries", cls.max_retries))),
            retry_delay_s=float(cfg.get("retry_delay_s", cls.retry_delay_s)),
            malformed_frame_limit=int(cfg.get("malformed_frame_limit", cls.malformed_frame_limit)),
            event_queue_size=int(cfg.get("event_queue_size", cls.event_queue_size)),
            output_dirs=tuple(Path(p) for p in (cfg.get("output_dirs") or [])),
        )


@dataclass(frozen=True)
class ChunkSettings:
    chunk_size: int = 49
    settle_before_chunk_s: float = 5.0
    settle_after_chunk_s: float = 5.0
    chunk_timeout_s: float = 180.0
    job_timeout_s: float = 1800.0
    fallback_after_s: float = 60.0
    confirm_interval_s: float = 10.0
    artifact_timeout_s: float = 30.0
    artifact_window_s: float = 600.0
    artifact_min_age_s: float = 2.0
    artifact_clock_skew_s: float = 2.0
    artifact_extensions: Tuple[str, ...] = (".mp4", ".avi", ".mov", ".mkv", ".webm")
    output_subfolder: str = ""
    output_prefix_format: str = "{stem}_chunk{number:02d}"

    @classmethod
    def from_profile(cls, profile: Mapping[str, Any]) -> "ChunkSettings":
        cfg = profile.get("chunks", {}) or {}
        defaults = cls()
        kwargs: Dict[str, Any] = {}
        for name in (
            "settle_before_chunk_s",
            "settle_after_chunk_s",
            "chunk_timeout_s",
            "job_timeout_s",
            "fallback_after_s",
            "confirm_interval_s",
            "artifact_timeout_s",
            "artifact_window_s",
            "artifact_min_age_s",
            "artifact_clock_skew_s",
        ):
            kwargs[name] = float(cfg.get(name, getattr(defaults, name)))
        chunk_size = int(cfg.get("chunk_size", defaults.chunk_size))
        if chunk_size <= 0:
            raise ValueError("chunks.chunk_size must be > 0")
        exts = cfg.get("artifact_extensions") or defaults.artifact_extensions
        return cls(
            chunk_size=chunk_size,
            artifact_extensions=tuple(str(e).lower() for e in exts),
            output_subfolder=str(cfg.get("output_subfolder") or ""),
            output_prefix_format=str(cfg.get("output_prefix_format") or defaults.output_prefix_format),
            **kwargs,
        )


@dataclass(frozen=True)
class StitchSettings:
    ffmpeg: str = "ffmpeg"
    reencode_fallback: bool = True
    copy_timeout_s: float = 600.0
    reencode_timeout_s: float = 900.0
    final_name_format: str = "{stem}_final.mp4"

    @classmethod
    def from_profile(cls, profile: Mapping[str, Any]) -> "StitchSettings":
        cfg = profile.get("stitch", {}) or {}
        return cls(
            ffmpeg=str(cfg.get("ffmpeg", cls.ffmpeg)),
            reencode_fallback=bool(cfg.get("reencode_fallback", cls.reencode_fallback)),
            copy_timeout_s=float(cfg.get("copy_timeout_s", cls.copy_timeout_s)),
            reencode_timeout_s=float(cfg.get("reencode_timeout_s", cls.reencode_timeout_s)),
            final_name_format=str(cfg.get("final_name_format", cls.final_name_format)),
        )


@dataclass(frozen=True)
class PayloadSettings:
    template: Optional[Path] = None
    fields: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    values: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_profile(cls, profile: Mapping[str, Any]) -> "PayloadSettings":
        cfg = profile.get("payload", {}) or {}
        template = cfg.get("template")
        fields: Dict[str, Tuple[str, ...]] = {}
        for name, paths in (cfg.get("fields") or {}).items():
            if isinstance(paths, str):
                paths = [paths]
            fields[str(name)] = tuple(str(p) for p in paths)
        return cls(
            template=Path(template) if template else None,
            fields=fields,
            values=dict(cfg.get("values") or {}),
        )
