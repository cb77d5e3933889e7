"""Websocket reader that feeds classified events into a session channel."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Callable, Optional

from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.sync.client import connect as ws_connect

from ..errors import BackendConnectionError
from .events import EventClassifier, ExecutionEvent, UnrecognizedEvent

logger = logging.getLogger(__name__)


def push_event(channel: "queue.Queue[ExecutionEvent]", event: ExecutionEvent) -> None:
    """Put ``event`` on ``channel``, dropping the oldest entry when full."""
    while True:
        try:
            channel.put_nowait(event)
            return
        except queue.Full:
            try:
                dropped = channel.get_nowait()
                logger.debug("Event channel full; dropped %s", dropped.type)
            except queue.Empty:
                pass


class EventStream:
    """One websocket connection plus the daemon thread that reads it.

    Frames are classified and pushed onto ``channel``. When the socket closes,
    errors, or produces ``malformed_frame_limit`` undecodable text frames in a
    row, ``on_failed`` is called once and the reader exits.
    """

    def __init__(
        self,
        url: str,
        channel: "queue.Queue[ExecutionEvent]",
        *,
        classifier: Optional[EventClassifier] = None,
        on_failed: Optional[Callable[[str], None]] = None,
        open_timeout_s: float = 10.0,
        malformed_frame_limit: int = 50,
        connect_fn: Callable[..., Any] = ws_connect,
    ) -> None:
        self.url = url
        self.channel = channel
        self.classifier = classifier or EventClassifier()
        self.on_failed = on_failed
        self.open_timeout_s = open_timeout_s
        self.malformed_frame_limit = max(1, int(malformed_frame_limit))
        self._connect_fn = connect_fn
        self._ws: Any = None
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._open = threading.Event()
        self._malformed = 0

    @property
    def is_open(self) -> bool:
        return self._open.is_set()

    def open(self) -> None:
        logger.info("Opening event stream %s", self.url)
        try:
            self._ws = self._connect_fn(self.url, open_timeout=self.open_timeout_s, max_size=None)
        except (OSError, WebSocketException) as exc:
            raise BackendConnectionError(f"Event stream connect failed: {exc}") from exc

        self._stop.clear()
        self._open.set()
        self._thread = threading.Thread(target=self._run, name="chunkflow-stream", daemon=True)
        self._thread.start()

    def close(self) -> None:
        self._stop.set()
        self._open.clear()
        ws = self._ws
        if ws is not None:
            try:
                ws.close()
            except (OSError, WebSocketException) as exc:
                logger.debug("Error closing event stream: %s", exc)
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=2.0)
        self._thread = None

    def _fail(self, reason: str) -> None:
        was_open = self._open.is_set()
        self._open.clear()
        if self._stop.is_set() or not was_open:
            return
        logger.warning("Event stream stopped: %s", reason)
        if self.on_failed is not None:
            self.on_failed(reason)

    def handle_frame(self, message: Any) -> bool:
        """Classify and enqueue one frame. Returns False once the malformed limit is hit."""
        event = self.classifier.classify(message)
        push_event(self.channel, event)
        if isinstance(event, UnrecognizedEvent) and isinstance(message, str):
            self._malformed += 1
            if self._malformed >= self.malformed_frame_limit:
                return False
        elif not isinstance(event, UnrecognizedEvent):
            self._malformed = 0
        return True

    def _run(self) -> None:
        self._malformed = 0
        try:
            for message in self._ws:
                if self._stop.is_set():
                    break
                if not self.handle_frame(message):
                    self._fail(f"{self._malformed} malformed frames in a row")
                    try:
                        self._ws.close()
                    except (OSError, WebSocketException) as exc:
                        logger.debug("Error closing event stream: %s", exc)
                    return
            self._fail("closed by server")
        except ConnectionClosed as exc:
            self._fail(f"connection closed: {exc}")
        except (OSError, WebSocketException) as exc:
            self._fail(f"stream error: {exc}")
