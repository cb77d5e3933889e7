"""Typed events decoded from the backend's websocket stream.

Each frame is a JSON document ``{"type": ..., "data": {...}}``. Decoding never
raises: text that is not a JSON document becomes :class:`UnrecognizedEvent`,
a document of a type we do not model becomes :class:`GenericEvent`.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Set, Union

logger = logging.getLogger(__name__)

_VIDEO_KEY_HINTS = ("mp4", "video", "avi", "mov")


@dataclass(frozen=True)
class OutputRef:
    """One output file reported by a backend node."""
    node_id: str
    filename: str
    subfolder: str = ""
    type: str = ""


@dataclass(frozen=True)
class StatusEvent:
    queue_remaining: Optional[int] = None
    raw: str = field(default="", repr=False)
    type: str = "status"


@dataclass(frozen=True)
class StartedEvent:
    correlation_id: str = ""
    raw: str = field(default="", repr=False)
    type: str = "execution_start"


@dataclass(frozen=True)
class ExecutingEvent:
    correlation_id: str = ""
    node: Optional[str] = None
    raw: str = field(default="", repr=False)
    type: str = "executing"


@dataclass(frozen=True)
class ProgressEvent:
    value: int = 0
    max: int = 0
    correlation_id: str = ""
    node: str = ""
    raw: str = field(default="", repr=False)
    type: str = "progress"

    @property
    def fraction(self) -> float:
        if self.max <= 0:
            return 0.0
        return max(0.0, min(1.0, self.value / self.max))


@dataclass(frozen=True)
class CompletedEvent:
    correlation_id: str = ""
    outputs: Mapping[str, Any] = field(default_factory=dict)
    synthesized: bool = False
    raw: str = field(default="", repr=False)
    type: str = "execution_complete"

    def video_output(self) -> Optional[OutputRef]:
        return find_video_output(self.outputs)


@dataclass(frozen=True)
class GenericEvent:
    """A JSON document of a type we do not model specially."""
    type: str = "unknown"
    raw: str = field(default="", repr=False)


@dataclass(frozen=True)
class UnrecognizedEvent:
    """Not a JSON document at all (binary preview frames, fragments)."""
    raw: str = field(default="", repr=False)
    type: str = "unrecognized"


ExecutionEvent = Union[
    StatusEvent,
    StartedEvent,
    ExecutingEvent,
    ProgressEvent,
    CompletedEvent,
    GenericEvent,
    UnrecognizedEvent,
]


def _as_text(raw: Union[str, bytes, bytearray]) -> Optional[str]:
    if isinstance(raw, (bytes, bytearray)):
        try:
            return bytes(raw).decode("utf-8")
        except UnicodeDecodeError:
            return None
    return raw


def _int_or_zero(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _str_or_empty(value: Any) -> str:
    return value if isinstance(value, str) else ""


def classify_frame(raw: Union[str, bytes, bytearray]) -> ExecutionEvent:
    """Decode one stream frame without any cross-frame state."""
    text = _as_text(raw)
    if text is None:
        return UnrecognizedEvent(raw=repr(bytes(raw[:64])))

    stripped = text.lstrip()
    if not stripped or stripped[0] not in "{[":
        return UnrecognizedEvent(raw=text)

    try:
        doc = json.loads(text)
    except (json.JSONDecodeError, RecursionError) as exc:
        logger.debug("Undecodable frame (likely fragmented): %s", exc)
        return UnrecognizedEvent(raw=text)

    if not isinstance(doc, dict):
        return GenericEvent(type="unknown", raw=text)

    msg_type = doc.get("type")
    if not isinstance(msg_type, str):
        return GenericEvent(type="unknown", raw=text)

    data = doc.get("data")
    if not isinstance(data, dict):
        data = {}

    if msg_type == "status":
        status = data.get("status") if isinstance(data.get("status"), dict) else {}
        exec_info = status.get("exec_info") if isinstance(status.get("exec_info"), dict) else {}
        remaining = exec_info.get("queue_remaining")
        return StatusEvent(
            queue_remaining=remaining if isinstance(remaining, int) else None,
            raw=text,
        )
    if msg_type == "execution_start":
        return StartedEvent(correlation_id=_str_or_empty(data.get("prompt_id")), raw=text)
    if msg_type == "executing":
        node = data.get("node")
        return ExecutingEvent(
            correlation_id=_str_or_empty(data.get("prompt_id")),
            node=str(node) if node is not None else None,
            raw=text,
        )
    if msg_type == "progress":
        return ProgressEvent(
            value=_int_or_zero(data.get("value")),
            max=_int_or_zero(data.get("max")),
            correlation_id=_str_or_empty(data.get("prompt_id")),
            node=str(data.get("node") or ""),
            raw=text,
        )
    if msg_type in ("execution_complete", "executed"):
        outputs = data.get("output")
        if not isinstance(outputs, dict):
            outputs = {}
        if msg_type == "executed" and outputs:
            # "executed" reports a single node's output; key it by that node.
            outputs = {str(data.get("node") or ""): outputs}
        return CompletedEvent(
            correlation_id=_str_or_empty(data.get("prompt_id")),
            outputs=outputs,
            raw=text,
            type=msg_type,
        )
    return GenericEvent(type=msg_type, raw=text)


class EventClassifier:
    """Stateful classifier that reproduces the backend's idle-means-done rule.

    The backend reports the end of a prompt as ``executing`` with
    ``node = null``. When that happens for a prompt id previously seen with an
    active node, a synthetic :class:`CompletedEvent` is returned instead.
    """

    def __init__(self) -> None:
        self._active: Set[str] = set()
        self._lock = threading.Lock()

    def classify(self, raw: Union[str, bytes, bytearray]) -> ExecutionEvent:
        try:
            event = classify_frame(raw)
        except Exception:
            # classify_frame is total; this guards the stream reader regardless.
            logger.exception("Frame classification failed")
            return UnrecognizedEvent(raw=str(raw)[:200])

        if isinstance(event, ExecutingEvent) and event.correlation_id:
            with self._lock:
                if event.node is not None:
                    self._active.add(event.correlation_id)
                    return event
                if event.correlation_id not in self._active:
                    return event
                self._active.discard(event.correlation_id)
            logger.info("Prompt %s went idle; treating as completed", event.correlation_id)
            return CompletedEvent(
                correlation_id=event.correlation_id,
                synthesized=True,
                raw=event.raw,
                type="execution_complete",
            )
        return event

    def reset(self) -> None:
        with self._lock:
            self._active.clear()


def _first_ref(node_id: str, entries: Any) -> Optional[OutputRef]:
    if not isinstance(entries, list) or not entries:
        return None
    first = entries[0]
    if not isinstance(first, dict):
        return None
    filename = first.get("filename")
    if not isinstance(filename, str) or not filename:
        return None
    return OutputRef(
        node_id=str(node_id),
        filename=filename,
        subfolder=_str_or_empty(first.get("subfolder")),
        type=_str_or_empty(first.get("type")),
    )


def find_video_output(outputs: Mapping[str, Any]) -> Optional[OutputRef]:
    """Pick the first video-like output from a completion's ``output`` map.

    Per node, ``videos`` wins over ``gifs``, which wins over any property whose
    name mentions mp4/video/avi/mov.
    """
    for node_id, result in (outputs or {}).items():
        if not isinstance(result, dict):
            continue
        if "videos" in result:
            return _first_ref(node_id, result["videos"])
        if "gifs" in result:
            return _first_ref(node_id, result["gifs"])
        for key, value in result.items():
            if any(hint in key for hint in _VIDEO_KEY_HINTS):
                return _first_ref(node_id, value)
    return None


def event_summary(event: ExecutionEvent) -> Dict[str, Any]:
    """Small dict form of an event for logs and job event streams."""
    out: Dict[str, Any] = {"type": event.type}
    for name in ("correlation_id", "node", "value", "max", "queue_remaining", "synthesized"):
        if hasattr(event, name):
            out[name] = getattr(event, name)
    return out
