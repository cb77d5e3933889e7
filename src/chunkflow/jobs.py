from __future__ import annotations

import json
import logging
import queue
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .backend.events import event_summary
from .backend.session import ConnectionManager
from .config import ChunkSettings, StitchSettings
from .errors import OperationCancelled
from .payload import FieldMap
from .pipeline import RenderOutcome, RenderRequest, execute_job, render_chunked
from .utils import utc_iso

logger = logging.getLogger(__name__)


@dataclass
class Job:
    id: str
    kind: str
    created_at: str = field(default_factory=utc_iso)
    status: str = "queued"  # queued|running|succeeded|partial|failed|stitch_failed|cancelled
    progress: float = 0.0
    message: str = ""
    result: Dict[str, Any] = field(default_factory=dict)

    events: "queue.Queue[str]" = field(default_factory=lambda: queue.Queue(maxsize=1000))
    cancel: threading.Event = field(default_factory=threading.Event, repr=False)
    thread: Optional[threading.Thread] = field(default=None, repr=False)

    @property
    def done(self) -> bool:
        return self.status not in ("queued", "running")


class JobManager:
    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def all(self) -> List[Job]:
        with self._lock:
            return list(self._jobs.values())

    def create(self, kind: str) -> Job:
        job = Job(id=uuid.uuid4().hex, kind=kind)
        with self._lock:
            self._jobs[job.id] = job
        self._emit(job, {"type": "job_created", "job": self._public(job)})
        return job

    def cancel(self, job_id: str) -> bool:
        job = self.get(job_id)
        if job is None or job.done:
            return False
        logger.info("Cancelling job %s", job_id)
        job.cancel.set()
        return True

    def _public(self, job: Job) -> Dict[str, Any]:
        return {
            "id": job.id,
            "kind": job.kind,
            "created_at": job.created_at,
            "status": job.status,
            "progress": job.progress,
            "message": job.message,
            "result": job.result,
        }

    def _emit(self, job: Job, payload: Dict[str, Any]) -> None:
        try:
            job.events.put_nowait(json.dumps(payload))
        except queue.Full:
            # Drop if the reader is slow; the next update carries full state.
            pass

    def _set(
        self,
        job: Job,
        *,
        status: Optional[str] = None,
        progress: Optional[float] = None,
        message: Optional[str] = None,
        result: Optional[Dict[str, Any]] = None,
    ) -> None:
        if status is not None:
            job.status = status
        if progress is not None:
            job.progress = max(0.0, min(100.0, float(progress)))
        if message is not None:
            job.message = message
        if result is not None:
            job.result = result
        self._emit(job, {"type": "job_update", "job": self._public(job)})

    def _start(self, job: Job, runner: Callable[[], None]) -> Job:
        t = threading.Thread(target=runner, name=f"chunkflow-job-{job.id[:8]}", daemon=True)
        job.thread = t
        t.start()
        return job

    def start_render(
        self,
        *,
        manager: ConnectionManager,
        request: RenderRequest,
        chunk_settings: ChunkSettings,
        fields: FieldMap,
        stitch_settings: Optional[StitchSettings] = None,
    ) -> Job:
        """Run a chunked render on a daemon thread with its own session."""
        job = self.create("render")

        def runner() -> None:
            self._set(job, status="running", progress=0.0, message="connecting")
            session = None
            try:
                session = manager.connect(cancel=job.cancel)
                outcome: RenderOutcome = render_chunked(
                    manager,
                    session,
                    request,
                    chunk_settings=chunk_settings,
                    fields=fields,
                    stitch_settings=stitch_settings,
                    cancel=job.cancel,
                    on_progress=lambda pct, msg: self._set(job, progress=pct, message=msg),
                )
                self._set(
                    job,
                    status=outcome.status,
                    progress=100.0 if outcome.success else None,
                    message=outcome.message,
                    result=outcome.to_dict(),
                )
            except OperationCancelled as e:
                self._set(job, status="cancelled", message=str(e), result={})
            except Exception as e:
                logger.exception("Render job %s failed", job.id)
                self._set(job, status="failed", message=f"{type(e).__name__}: {e}", result={})
            finally:
                if session is not None:
                    manager.disconnect(session)

        return self._start(job, runner)

    def start_submit(self, *, manager: ConnectionManager, payload: Dict[str, Any], timeout_s: float) -> Job:
        """Run one full job on a daemon thread."""
        job = self.create("submit")

        def runner() -> None:
            self._set(job, status="running", progress=0.0, message="connecting")
            session = None
            try:
                session = manager.connect(cancel=job.cancel)

                def on_progress(event: Any) -> None:
                    self._set(job, progress=100.0 * event.fraction, message=f"step {event.value}/{event.max}")
                    self._emit(job, {"type": "backend_event", "event": event_summary(event)})

                result = execute_job(
                    manager, session, payload, timeout_s=timeout_s, cancel=job.cancel, on_progress=on_progress
                )
                ref = result.output_ref
                self._set(
                    job,
                    status="succeeded",
                    progress=100.0,
                    message=f"done ({result.resolved_by.value})",
                    result={
                        "prompt_id": result.correlation_id,
                        "resolved_by": result.resolved_by.value,
                        "output": ref.filename if ref else None,
                    },
                )
            except OperationCancelled as e:
                self._set(job, status="cancelled", message=str(e), result={})
            except Exception as e:
                logger.exception("Submit job %s failed", job.id)
                self._set(job, status="failed", message=f"{type(e).__name__}: {e}", result={})
            finally:
                if session is not None:
                    manager.disconnect(session)

        return self._start(job, runner)
