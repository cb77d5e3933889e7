from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass
from typing import Dict, Optional

from .backend.http import BackendHttpClient
from .config import BackendSettings
from .utils import subprocess_flags as _subprocess_flags


@dataclass(frozen=True)
class DoctorReport:
    ok: bool
    checks: Dict[str, Dict[str, object]]


def _which(cmd: str) -> Optional[str]:
    return shutil.which(cmd)


def _version(cmd: str) -> str:
    try:
        out = subprocess.check_output([cmd, "-version"], text=True, stderr=subprocess.STDOUT, **_subprocess_flags())
        return out.splitlines()[0].strip()
    except (OSError, subprocess.CalledProcessError) as e:
        return f"error: {type(e).__name__}: {e}"


def run_doctor(backend: Optional[BackendSettings] = None, *, client: Optional[BackendHttpClient] = None) -> DoctorReport:
    checks: Dict[str, Dict[str, object]] = {}

    for tool in ("ffmpeg", "ffprobe"):
        path = _which(tool)
        checks[tool] = {
            "found": path is not None,
            "path": path,
            "version": _version(tool) if path else None,
        }

    backend = backend or BackendSettings()
    client = client or BackendHttpClient(backend.base_url, timeout_s=backend.connection_timeout_s)
    checks["backend"] = {"url": backend.base_url, "reachable": client.probe()}

    dirs = [str(p) for p in backend.output_dirs]
    checks["output_dirs"] = {
        "configured": dirs,
        "existing": [d for d, p in zip(dirs, backend.output_dirs) if p.is_dir()],
    }
    if not dirs:
        checks["output_dirs"]["note"] = "Set backend.output_dirs in the profile to locate chunk artifacts."

    ok = bool(checks["ffmpeg"]["found"] and checks["ffprobe"]["found"] and checks["backend"]["reachable"])
    return DoctorReport(ok=ok, checks=checks)
