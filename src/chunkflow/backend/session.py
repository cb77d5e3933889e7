"""Connection lifetime management: sessions, retries and submission."""

from __future__ import annotations

import logging
import queue
import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, Tuple, Type, TypeVar

import requests

from ..config import BackendSettings
from ..errors import BackendConnectionError
from ..utils import raise_if_cancelled, wait_or_cancel
from .events import EventClassifier, ExecutionEvent
from .http import BackendHttpClient, QueueState, SubmitResult, UploadedFile
from .stream import EventStream

if TYPE_CHECKING:
    from ..correlator import PendingWaiter

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS: Tuple[Type[BaseException], ...] = (
    BackendConnectionError,
    requests.ConnectionError,
    requests.Timeout,
    OSError,
)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


@dataclass
class Session:
    """One logical connection lifetime to the backend.

    ``events`` is the channel the stream reader fills and the correlator
    drains. ``pending`` maps correlation ids to waiters and is only touched
    while holding ``lock``.
    """
    client_id: str
    events: "queue.Queue[ExecutionEvent]"
    state: ConnectionState = ConnectionState.DISCONNECTED
    pending: Dict[str, "PendingWaiter"] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)
    last_error: Optional[str] = None
    stream: Optional[EventStream] = field(default=None, repr=False)

    @property
    def is_connected(self) -> bool:
        if self.state != ConnectionState.CONNECTED:
            return False
        return self.stream is None or self.stream.is_open


def retry_call(
    operation: Callable[[], T],
    *,
    attempts: int,
    delay_s: float,
    what: str,
    cancel: Optional[threading.Event] = None,
    retry_on: Tuple[Type[BaseException], ...] = RETRYABLE_ERRORS,
    sleep: Callable[[float, Optional[threading.Event]], None] = lambda s, c: wait_or_cancel(s, c, "retry backoff"),
) -> T:
    """Run ``operation`` up to ``attempts`` times with linear backoff.

    Attempt ``n`` that fails is followed by a wait of ``delay_s * n``. The last
    error is re-raised once attempts are exhausted; errors outside
    ``retry_on`` propagate immediately.
    """
    attempts = max(1, int(attempts))
    last_error: Optional[BaseException] = None
    for attempt in range(1, attempts + 1):
        raise_if_cancelled(cancel, what)
        try:
            return operation()
        except retry_on as exc:
            last_error = exc
            if attempt == attempts:
                logger.error("%s failed after %d attempts: %s", what, attempts, exc)
                break
            wait_s = delay_s * attempt
            logger.warning(
                "%s failed on attempt %d/%d, retrying in %.1fs: %s", what, attempt, attempts, wait_s, exc
            )
            sleep(wait_s, cancel)
    assert last_error is not None
    raise last_error


class ConnectionManager:
    """Owns the request/response transport and opens event streams for sessions."""

    def __init__(
        self,
        settings: BackendSettings,
        *,
        http: Optional[BackendHttpClient] = None,
        stream_factory: Optional[Callable[..., EventStream]] = None,
        sleep: Optional[Callable[[float, Optional[threading.Event]], None]] = None,
    ) -> None:
        self.settings = settings
        self.http = http or BackendHttpClient(settings.base_url, timeout_s=settings.connection_timeout_s)
        self._stream_factory = stream_factory or EventStream
        self._sleep = sleep

    def _retry(self, operation: Callable[[], T], what: str, cancel: Optional[threading.Event]) -> T:
        kwargs: Dict[str, Any] = {}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        return retry_call(
            operation,
            attempts=self.settings.max_retries,
            delay_s=self.settings.retry_delay_s,
            what=what,
            cancel=cancel,
            **kwargs,
        )

    def new_session(self, client_id: Optional[str] = None) -> Session:
        return Session(
            client_id=client_id or uuid.uuid4().hex,
            events=queue.Queue(maxsize=max(1, self.settings.event_queue_size)),
        )

    def connect(self, client_id: Optional[str] = None, *, cancel: Optional[threading.Event] = None) -> Session:
        """Open a new session: liveness probe first, then the event stream."""
        session = self.new_session(client_id)
        self.open(session, cancel=cancel)
        return session

    def open(self, session: Session, *, cancel: Optional[threading.Event] = None) -> None:
        """(Re)establish both channels for ``session``."""
        logger.info("Connecting session %s to %s", session.client_id, self.settings.base_url)
        session.state = ConnectionState.CONNECTING
        if session.stream is not None:
            session.stream.close()
            session.stream = None

        def probe() -> bool:
            if not self.http.probe():
                raise BackendConnectionError(f"Backend not reachable at {self.settings.base_url}")
            return True

        def open_stream() -> EventStream:
            stream = self._stream_factory(
                f"{self.settings.ws_url}/ws?clientId={session.client_id}",
                session.events,
                classifier=EventClassifier(),
                on_failed=lambda reason: self._on_stream_failed(session, reason),
                open_timeout_s=self.settings.connection_timeout_s,
                malformed_frame_limit=self.settings.malformed_frame_limit,
            )
            stream.open()
            return stream

        try:
            self._retry(probe, "liveness probe", cancel)
            session.stream = self._retry(open_stream, "event stream connect", cancel)
        except Exception as exc:
            session.state = ConnectionState.FAILED
            session.last_error = str(exc)
            raise

        session.state = ConnectionState.CONNECTED
        session.last_error = None
        logger.info("Session %s connected", session.client_id)

    def _on_stream_failed(self, session: Session, reason: str) -> None:
        session.state = ConnectionState.FAILED
        session.last_error = reason

    def disconnect(self, session: Session) -> None:
        if session.stream is not None:
            session.stream.close()
            session.stream = None
        session.state = ConnectionState.DISCONNECTED
        logger.info("Session %s disconnected", session.client_id)

    def is_connected(self, session: Session) -> bool:
        return session.is_connected

    def ensure_connected(self, session: Session, *, cancel: Optional[threading.Event] = None) -> None:
        if session.is_connected:
            return
        logger.warning(
            "Session %s is %s (%s); reconnecting",
            session.client_id,
            session.state.value,
            session.last_error or "no error recorded",
        )
        self.open(session, cancel=cancel)

    def submit_job(
        self,
        session: Session,
        payload: Dict[str, Any],
        *,
        cancel: Optional[threading.Event] = None,
    ) -> str:
        """Submit ``payload`` under the session's client id and return its correlation id."""
        result: SubmitResult = self._retry(
            lambda: self.http.submit_prompt(payload, session.client_id), "prompt submission", cancel
        )
        logger.info("Submitted prompt %s (queue #%s)", result.prompt_id, result.number)
        return result.prompt_id

    def upload_file(
        self,
        path: Path,
        kind: str = "image",
        *,
        cancel: Optional[threading.Event] = None,
    ) -> UploadedFile:
        return self._retry(lambda: self.http.upload_file(Path(path), kind), f"upload {Path(path).name}", cancel)

    def get_queue(self) -> QueueState:
        return self.http.get_queue()

    def close(self) -> None:
        self.http.close()
