"""High-level entry points: one full job, or a chunked render plus stitch."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .backend.session import ConnectionManager, Session
from .chunks import ChunkOrchestrator, ChunkResource, ChunkRun
from .config import ChunkSettings, StitchSettings
from .correlator import FALLBACK_AFTER_S, JOB_TIMEOUT_S, CompletionResult, ExecutionCorrelator, ProgressCallback
from .errors import ChunkflowError, OperationCancelled
from .payload import FieldMap
from .stitcher import OutputStitcher

logger = logging.getLogger(__name__)

SUCCEEDED = "succeeded"
PARTIAL = "partial"
FAILED = "failed"
STITCH_FAILED = "stitch_failed"
CANCELLED = "cancelled"


@dataclass
class RenderOutcome:
    success: bool
    status: str
    message: str
    final_path: Optional[Path] = None
    run: Optional[ChunkRun] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "success": self.success,
            "status": self.status,
            "message": self.message,
            "final_path": str(self.final_path) if self.final_path else None,
        }
        if self.run is not None:
            out["chunks"] = [
                {
                    "index": t.index,
                    "frame_start": t.frame_start,
                    "frame_count": t.frame_count,
                    "status": t.status.value,
                    "artifact_path": str(t.artifact_path) if t.artifact_path else None,
                    "error": t.error,
                }
                for t in self.run.tasks
            ]
        return out


@dataclass
class RenderRequest:
    template: Mapping[str, Any]
    total_frames: int
    stem: str
    dest_dir: Path
    resources: Sequence[ChunkResource] = ()
    values: Dict[str, Any] = field(default_factory=dict)
    chunk_size: Optional[int] = None


def final_destination(dest_dir: Path, stem: str, name_format: str = "{stem}_final.mp4") -> Path:
    return Path(dest_dir) / name_format.format(stem=stem)


def execute_job(
    manager: ConnectionManager,
    session: Session,
    payload: Dict[str, Any],
    *,
    timeout_s: float = JOB_TIMEOUT_S,
    fallback_after_s: Optional[float] = FALLBACK_AFTER_S,
    cancel: Optional[threading.Event] = None,
    on_progress: Optional[ProgressCallback] = None,
    correlator: Optional[ExecutionCorrelator] = None,
) -> CompletionResult:
    """Submit one full payload and wait for it under the full-job deadline.

    Pass ``fallback_after_s=None`` to rely on the completion event alone.
    """
    manager.ensure_connected(session, cancel=cancel)
    correlation_id = manager.submit_job(session, payload, cancel=cancel)
    correlator = correlator or ExecutionCorrelator(session)
    return correlator.await_completion(
        correlation_id,
        timeout_s=timeout_s,
        fallback_after_s=fallback_after_s,
        cancel=cancel,
        on_progress=on_progress,
    )


def _summarize(run: ChunkRun) -> str:
    failed: List[str] = [f"#{t.number}: {t.error}" for t in run.failed]
    text = f"{len(run.succeeded)}/{len(run.tasks)} chunks succeeded"
    if failed:
        text += "; failed " + "; ".join(failed)
    return text


def render_chunked(
    manager: ConnectionManager,
    session: Session,
    request: RenderRequest,
    *,
    chunk_settings: ChunkSettings,
    fields: FieldMap,
    stitch_settings: Optional[StitchSettings] = None,
    cancel: Optional[threading.Event] = None,
    on_progress: Optional[Callable[[float, str], None]] = None,
    orchestrator: Optional[ChunkOrchestrator] = None,
    stitcher: Optional[OutputStitcher] = None,
) -> RenderOutcome:
    """Run every chunk, then stitch the successful ones in order.

    Never raises for job-level problems; the outcome carries them.
    """
    stitch_settings = stitch_settings or StitchSettings()
    orchestrator = orchestrator or ChunkOrchestrator(manager, session, chunk_settings, fields=fields)
    stitcher = stitcher or OutputStitcher(stitch_settings)

    try:
        run = orchestrator.run(
            request.total_frames,
            request.template,
            stem=request.stem,
            chunk_size=request.chunk_size,
            resources=request.resources,
            values=request.values,
            cancel=cancel,
            on_progress=on_progress,
        )
    except Exception as e:
        logger.exception("Chunked render failed before any chunk ran")
        return RenderOutcome(False, FAILED, f"{type(e).__name__}: {e}")

    summary = _summarize(run)
    if run.cancelled:
        return RenderOutcome(False, CANCELLED, f"Cancelled; {summary}", run=run)
    if not run.artifacts:
        return RenderOutcome(False, FAILED, f"No chunks produced output; {summary}", run=run)

    destination = final_destination(request.dest_dir, request.stem, stitch_settings.final_name_format)

    def status(msg: str) -> None:
        if on_progress is not None:
            on_progress(100.0, msg)

    try:
        final_path = stitcher.stitch(run.artifacts, destination, cancel=cancel, on_status=status)
    except OperationCancelled:
        return RenderOutcome(False, CANCELLED, f"Cancelled while stitching; {summary}", run=run)
    except (ChunkflowError, OSError, RuntimeError) as e:
        logger.error("Stitch failed: %s", e)
        return RenderOutcome(
            False,
            STITCH_FAILED,
            f"Stitch failed: {e}. Chunk files kept: {', '.join(str(p) for p in run.artifacts)}",
            run=run,
        )

    if run.failed or len(run.succeeded) < len(run.tasks):
        return RenderOutcome(True, PARTIAL, f"Partial output {final_path}; {summary}", final_path, run)
    return RenderOutcome(True, SUCCEEDED, f"Rendered {final_path}; {summary}", final_path, run)
