"""Correlate asynchronous completion events with the caller waiting on them.

The event stream is unreliable: completions can be lost, duplicated or
arrive for other prompts. Each submitted prompt gets one :class:`PendingWaiter`
that resolves exactly once, by whichever of these comes first:

- a matching :class:`~chunkflow.backend.events.CompletedEvent`
- an optional confirmation probe (e.g. the artifact appearing on disk)
- the fallback timer, which force-completes with the submitted id
- the hard deadline, which fails with :class:`ExecutionTimeoutError`

Later attempts are no-ops under the session lock.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from .backend.events import CompletedEvent, ExecutionEvent, OutputRef, ProgressEvent, event_summary
from .backend.session import Session
from .errors import ExecutionTimeoutError, OperationCancelled

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]
ConfirmCallback = Callable[[], Optional[Path]]

CHUNK_TIMEOUT_S = 3 * 60.0
JOB_TIMEOUT_S = 30 * 60.0
FALLBACK_AFTER_S = 60.0


class Resolution(str, Enum):
    COMPLETED = "completed"
    FORCED = "forced"
    ARTIFACT = "artifact"


@dataclass(frozen=True)
class CompletionResult:
    correlation_id: str
    resolved_by: Resolution
    outputs: Mapping[str, Any] = field(default_factory=dict)
    output_ref: Optional[OutputRef] = None
    artifact_path: Optional[Path] = None

    @property
    def forced(self) -> bool:
        return self.resolved_by != Resolution.COMPLETED


class PendingWaiter:
    """Single-resolution future for one correlation id."""

    def __init__(
        self,
        correlation_id: str,
        lock: threading.Lock,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        self.correlation_id = correlation_id
        self.future: "Future[CompletionResult]" = Future()
        self.resolved = False
        self.on_progress = on_progress
        self._lock = lock

    def try_resolve(self, result: CompletionResult) -> bool:
        with self._lock:
            if self.resolved:
                return False
            self.resolved = True
        self.future.set_result(result)
        return True

    def try_fail(self, exc: BaseException) -> bool:
        with self._lock:
            if self.resolved:
                return False
            self.resolved = True
        self.future.set_exception(exc)
        return True


class ExecutionCorrelator:
    """Sole consumer of a session's event channel.

    The thread blocked in :meth:`await_completion` drains the channel and
    dispatches events, so no dispatcher thread is needed.
    """

    def __init__(
        self,
        session: Session,
        *,
        poll_interval_s: float = 0.25,
        timer_factory: Callable[..., Any] = threading.Timer,
    ) -> None:
        self.session = session
        self.poll_interval_s = poll_interval_s
        self._timer_factory = timer_factory
        self.mismatches = 0
        self.duplicates = 0

    def register(self, correlation_id: str, on_progress: Optional[ProgressCallback] = None) -> PendingWaiter:
        with self.session.lock:
            if correlation_id in self.session.pending:
                raise ValueError(f"Already awaiting correlation id {correlation_id}")
            waiter = PendingWaiter(correlation_id, self.session.lock, on_progress)
            self.session.pending[correlation_id] = waiter
        return waiter

    def discard(self, correlation_id: str) -> None:
        with self.session.lock:
            self.session.pending.pop(correlation_id, None)

    def _lookup(self, correlation_id: str) -> Optional[PendingWaiter]:
        with self.session.lock:
            return self.session.pending.get(correlation_id)

    def dispatch(self, event: ExecutionEvent) -> None:
        """Route one classified event to the waiter it belongs to."""
        if isinstance(event, CompletedEvent):
            waiter = self._lookup(event.correlation_id)
            if waiter is None:
                self.mismatches += 1
                logger.warning(
                    "Completion for %s does not match any pending prompt; ignoring",
                    event.correlation_id or "<none>",
                )
                return
            result = CompletionResult(
                correlation_id=event.correlation_id,
                resolved_by=Resolution.COMPLETED,
                outputs=dict(event.outputs),
                output_ref=event.video_output(),
            )
            if waiter.try_resolve(result):
                logger.info(
                    "Prompt %s completed%s", event.correlation_id, " (idle signal)" if event.synthesized else ""
                )
            else:
                self.duplicates += 1
                logger.info("Completion already handled for %s; ignoring duplicate", event.correlation_id)
            return

        if isinstance(event, ProgressEvent):
            waiter = self._lookup(event.correlation_id)
            if waiter is None or waiter.on_progress is None:
                return
            try:
                waiter.on_progress(event)
            except Exception:
                logger.exception("Progress callback failed for %s", event.correlation_id)
            return

        logger.debug("Event %s", event_summary(event))

    def force_complete(self, correlation_id: str) -> bool:
        """Resolve a still-pending waiter with its own id standing in for the result."""
        waiter = self._lookup(correlation_id)
        if waiter is None:
            return False
        forced = waiter.try_resolve(
            CompletionResult(correlation_id=correlation_id, resolved_by=Resolution.FORCED)
        )
        if forced:
            logger.warning("Forcing completion of %s; completion event may have been missed", correlation_id)
        return forced

    def _drain_once(self, timeout_s: float) -> None:
        try:
            event = self.session.events.get(timeout=max(0.0, timeout_s))
        except queue.Empty:
            return
        self.dispatch(event)

    def await_completion(
        self,
        correlation_id: str,
        *,
        timeout_s: float = JOB_TIMEOUT_S,
        fallback_after_s: Optional[float] = FALLBACK_AFTER_S,
        cancel: Optional[threading.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
        confirm: Optional[ConfirmCallback] = None,
        confirm_interval_s: float = 10.0,
    ) -> CompletionResult:
        """Block until ``correlation_id`` resolves.

        Raises:
            ExecutionTimeoutError: when ``timeout_s`` elapses first
            OperationCancelled: when ``cancel`` is set first
        """
        waiter = self.register(correlation_id, on_progress)
        timer = None
        if fallback_after_s is not None and fallback_after_s > 0:
            timer = self._timer_factory(fallback_after_s, self.force_complete, args=(correlation_id,))
            timer.daemon = True
            timer.start()

        started = time.monotonic()
        deadline = started + timeout_s
        next_confirm = started + confirm_interval_s
        warned_disconnected = False
        try:
            while not waiter.future.done():
                if cancel is not None and cancel.is_set():
                    waiter.try_fail(OperationCancelled(f"wait for {correlation_id} cancelled"))
                    break

                now = time.monotonic()
                if now >= deadline:
                    waiter.try_fail(
                        ExecutionTimeoutError(
                            f"Prompt {correlation_id} timed out after {timeout_s:.0f}s",
                            correlation_id=correlation_id,
                            timeout_s=timeout_s,
                        )
                    )
                    break

                if not warned_disconnected and not self.session.is_connected:
                    warned_disconnected = True
                    logger.warning(
                        "Connection lost while waiting on %s; relying on fallback completion", correlation_id
                    )

                if confirm is not None and now >= next_confirm:
                    next_confirm = now + confirm_interval_s
                    try:
                        found = confirm()
                    except OSError as exc:
                        logger.debug("Confirmation probe failed: %s", exc)
                        found = None
                    if found is not None:
                        if waiter.try_resolve(
                            CompletionResult(
                                correlation_id=correlation_id,
                                resolved_by=Resolution.ARTIFACT,
                                artifact_path=Path(found),
                            )
                        ):
                            logger.info("Prompt %s confirmed by artifact %s", correlation_id, found)
                        break

                self._drain_once(min(self.poll_interval_s, deadline - now))

            return waiter.future.result()
        finally:
            if timer is not None:
                timer.cancel()
            self.discard(correlation_id)
