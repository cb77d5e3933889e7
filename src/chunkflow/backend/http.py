"""Request/response transport to the backend (liveness, uploads, submission)."""

from __future__ import annotations

import logging
import mimetypes
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

from ..errors import BackendConnectionError, SubmissionError, UploadError

logger = logging.getLogger(__name__)

VIDEO_CONTENT_TYPES: Dict[str, str] = {
    ".mp4": "video/mp4",
    ".avi": "video/x-msvideo",
    ".mov": "video/quicktime",
    ".webm": "video/webm",
}
DEFAULT_VIDEO_CONTENT_TYPE = "video/mp4"
DEFAULT_IMAGE_CONTENT_TYPE = "image/jpeg"


def content_type_for(path: Path, kind: str) -> str:
    ext = Path(path).suffix.lower()
    if kind == "video":
        return VIDEO_CONTENT_TYPES.get(ext, DEFAULT_VIDEO_CONTENT_TYPE)
    guessed, _ = mimetypes.guess_type(f"file{ext}")
    if guessed and guessed.startswith("image/"):
        return guessed
    return DEFAULT_IMAGE_CONTENT_TYPE


@dataclass(frozen=True)
class UploadedFile:
    """Backend-side reference to an uploaded input file."""
    name: str
    subfolder: str = ""
    type: str = "input"

    @property
    def ref(self) -> str:
        return f"{self.subfolder}/{self.name}" if self.subfolder else self.name


@dataclass(frozen=True)
class SubmitResult:
    prompt_id: str
    number: Optional[int] = None
    node_errors: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class QueueState:
    running: List[str] = field(default_factory=list)
    pending: List[str] = field(default_factory=list)

    def contains(self, prompt_id: str) -> bool:
        return prompt_id in self.running or prompt_id in self.pending


def _queue_ids(items: Any) -> List[str]:
    # Queue entries are [number, prompt_id, prompt, extra, outputs] lists or
    # {"prompt_id": ...} objects depending on the backend version.
    ids: List[str] = []
    for item in items or []:
        if isinstance(item, dict) and item.get("prompt_id"):
            ids.append(str(item["prompt_id"]))
        elif isinstance(item, (list, tuple)) and len(item) > 1 and isinstance(item[1], str):
            ids.append(item[1])
    return ids


class BackendHttpClient:
    """Thin ``requests`` wrapper around the backend's REST endpoints."""

    def __init__(self, base_url: str, *, timeout_s: float = 10.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self._http = session or requests.Session()

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def close(self) -> None:
        self._http.close()

    def probe(self) -> bool:
        """``GET /system_stats``; any 2xx means reachable."""
        started = time.monotonic()
        try:
            resp = self._http.get(self._url("/system_stats"), timeout=self.timeout_s)
        except requests.RequestException as exc:
            logger.warning("Liveness probe to %s failed: %s", self.base_url, exc)
            return False
        if 200 <= resp.status_code < 300:
            logger.info("Backend reachable in %.0fms", (time.monotonic() - started) * 1000)
            return True
        logger.error("Liveness probe returned HTTP %s", resp.status_code)
        return False

    def _post_upload(self, endpoint: str, field_name: str, path: Path, content_type: str) -> requests.Response:
        with path.open("rb") as fh:
            return self._http.post(
                self._url(endpoint),
                files={field_name: (path.name, fh, content_type)},
                data={"type": "input"},
                timeout=self.timeout_s,
            )

    def upload_file(self, path: Path, kind: str = "image") -> UploadedFile:
        """Upload ``path`` as an input file.

        Videos try ``/upload/video`` first and fall back to ``/upload/image``
        when that endpoint is missing or fails.
        """
        path = Path(path)
        if not path.is_file():
            raise UploadError(f"File not found: {path}")
        if kind not in ("image", "video"):
            raise ValueError(f"kind must be 'image' or 'video', got {kind!r}")

        content_type = content_type_for(path, kind)
        logger.info("Uploading %s %s (%d bytes)", kind, path, path.stat().st_size)
        started = time.monotonic()

        resp: Optional[requests.Response] = None
        try:
            if kind == "video":
                try:
                    resp = self._post_upload("/upload/video", "video", path, content_type)
                    if not resp.ok:
                        logger.info("Video endpoint returned HTTP %s; using image endpoint", resp.status_code)
                        resp = None
                except requests.RequestException as exc:
                    logger.info("Video endpoint unavailable (%s); using image endpoint", exc)
                    resp = None
            if resp is None:
                resp = self._post_upload("/upload/image", "image", path, content_type)
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise BackendConnectionError(f"Upload of {path.name} failed: {exc}") from exc
        except requests.RequestException as exc:
            raise UploadError(f"Upload of {path.name} failed: {exc}") from exc

        if not resp.ok:
            raise UploadError(f"Upload failed with HTTP {resp.status_code}: {resp.text[:500]}")
        try:
            body = resp.json()
        except ValueError as exc:
            raise UploadError(f"Upload response was not JSON: {resp.text[:200]}") from exc
        name = body.get("name") if isinstance(body, dict) else None
        if not name:
            raise UploadError("Upload response missing filename")

        uploaded = UploadedFile(
            name=str(name),
            subfolder=str(body.get("subfolder") or ""),
            type=str(body.get("type") or "input"),
        )
        logger.info("Uploaded %s in %.0fms as %s", path.name, (time.monotonic() - started) * 1000, uploaded.ref)
        return uploaded

    def submit_prompt(self, payload: Dict[str, Any], client_id: str) -> SubmitResult:
        """``POST /prompt``; returns the backend-assigned prompt id."""
        try:
            resp = self._http.post(
                self._url("/prompt"),
                json={"prompt": payload, "client_id": client_id},
                timeout=self.timeout_s,
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise BackendConnectionError(f"Prompt submission failed: {exc}") from exc
        except requests.RequestException as exc:
            raise SubmissionError(f"Prompt submission failed: {exc}") from exc

        body: Any = None
        try:
            body = resp.json()
        except ValueError:
            body = None

        if not resp.ok:
            node_errors = body.get("node_errors") if isinstance(body, dict) else None
            raise SubmissionError(
                f"Prompt rejected with HTTP {resp.status_code}: {resp.text[:500]}",
                status_code=resp.status_code,
                node_errors=node_errors if isinstance(node_errors, dict) else None,
            )
        if not isinstance(body, dict) or not body.get("prompt_id"):
            raise SubmissionError("Prompt response missing prompt_id", status_code=resp.status_code)

        node_errors = body.get("node_errors") or {}
        if node_errors:
            logger.warning("Prompt %s accepted with node errors: %s", body["prompt_id"], node_errors)
        number = body.get("number")
        return SubmitResult(
            prompt_id=str(body["prompt_id"]),
            number=number if isinstance(number, int) else None,
            node_errors=node_errors if isinstance(node_errors, dict) else {},
        )

    def get_queue(self) -> QueueState:
        try:
            resp = self._http.get(self._url("/queue"), timeout=self.timeout_s)
        except requests.RequestException as exc:
            raise BackendConnectionError(f"Queue request failed: {exc}") from exc
        if not resp.ok:
            raise BackendConnectionError(f"Queue request failed with HTTP {resp.status_code}")
        try:
            body = resp.json()
        except ValueError as exc:
            raise BackendConnectionError(f"Queue response is not JSON: {exc}") from exc
        if not isinstance(body, dict):
            raise BackendConnectionError(f"Queue response has unexpected shape: {type(body).__name__}")
        return QueueState(
            running=_queue_ids(body.get("queue_running")),
            pending=_queue_ids(body.get("queue_pending")),
        )
