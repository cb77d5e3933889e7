"""Split an oversized job into sequential chunks and run them one by one.

Each chunk is an independent backend job over a contiguous frame range. A
chunk that fails is recorded and the loop moves on; the caller gets every
artifact that was produced, in chunk order.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .artifacts import find_recent_artifact, resolve_output_path, wait_for_artifact
from .backend.events import ProgressEvent
from .backend.session import ConnectionManager, Session
from .config import ChunkSettings
from .correlator import CompletionResult, ExecutionCorrelator
from .errors import ChunkflowError, OperationCancelled, PartialChunkFailure
from .payload import FRAME_COUNT, FRAME_START, OUTPUT_PREFIX, FieldMap, PayloadDocument, materialize
from .utils import wait_or_cancel

logger = logging.getLogger(__name__)

ProgressFn = Callable[[float, str], None]
SleepFn = Callable[[float, Optional[threading.Event], str], None]


class ChunkStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class ChunkTask:
    index: int
    frame_start: int
    frame_count: int
    status: ChunkStatus = ChunkStatus.PENDING
    artifact_path: Optional[Path] = None
    error: Optional[str] = None
    correlation_id: Optional[str] = None

    @property
    def number(self) -> int:
        return self.index + 1

    @property
    def frame_end(self) -> int:
        return self.frame_start + self.frame_count


def plan_chunks(total_frames: int, chunk_size: int) -> List[ChunkTask]:
    """Partition ``[0, total_frames)`` into ``ceil(total/size)`` contiguous tasks."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be > 0")
    if total_frames < 0:
        raise ValueError("total_frames must be >= 0")
    count = math.ceil(total_frames / chunk_size)
    tasks = []
    for i in range(count):
        start = i * chunk_size
        tasks.append(ChunkTask(index=i, frame_start=start, frame_count=min(chunk_size, total_frames - start)))
    return tasks


@dataclass(frozen=True)
class ChunkResource:
    """A reference file uploaded before every chunk and bound to ``field_name``."""
    field_name: str
    path: Path
    kind: str = "image"


@dataclass
class ChunkRun:
    tasks: List[ChunkTask] = field(default_factory=list)
    cancelled: bool = False

    @property
    def succeeded(self) -> List[ChunkTask]:
        return [t for t in self.tasks if t.status == ChunkStatus.SUCCEEDED]

    @property
    def failed(self) -> List[ChunkTask]:
        return [t for t in self.tasks if t.status == ChunkStatus.FAILED]

    @property
    def artifacts(self) -> List[Path]:
        ordered = sorted(self.succeeded, key=lambda t: t.index)
        return [t.artifact_path for t in ordered if t.artifact_path is not None]


class ProgressReporter:
    """Overall percent across chunks; clamped to [0, 100] and never decreasing."""

    def __init__(self, chunk_count: int, callback: Optional[ProgressFn] = None):
        self.chunk_count = max(1, chunk_count)
        self.callback = callback
        self.last = 0.0

    def report(self, index: int, fraction: float, message: str) -> float:
        fraction = max(0.0, min(1.0, fraction))
        percent = 100.0 * (index + fraction) / self.chunk_count
        percent = max(self.last, max(0.0, min(100.0, percent)))
        self.last = percent
        if self.callback is not None:
            try:
                self.callback(percent, message)
            except Exception:
                logger.exception("Progress callback failed")
        return percent


class ChunkOrchestrator:
    def __init__(
        self,
        manager: ConnectionManager,
        session: Session,
        settings: ChunkSettings,
        *,
        fields: FieldMap,
        output_dirs: Optional[Sequence[Path]] = None,
        correlator: Optional[ExecutionCorrelator] = None,
        sleep: SleepFn = wait_or_cancel,
    ) -> None:
        self.manager = manager
        self.session = session
        self.settings = settings
        self.fields = fields
        self.output_dirs = [Path(p) for p in (output_dirs if output_dirs is not None else manager.settings.output_dirs)]
        self.correlator = correlator or ExecutionCorrelator(session)
        self._sleep = sleep

    def output_prefix(self, stem: str, task: ChunkTask) -> str:
        return self.settings.output_prefix_format.format(stem=stem, number=task.number, index=task.index)

    def probe_dirs(self) -> List[Path]:
        dirs: List[Path] = []
        for base in self.output_dirs:
            if self.settings.output_subfolder:
                dirs.append(base / self.settings.output_subfolder)
            dirs.append(base)
        return dirs

    def run(
        self,
        total_frames: int,
        template: Mapping[str, Any],
        *,
        stem: str,
        chunk_size: Optional[int] = None,
        resources: Sequence[ChunkResource] = (),
        values: Optional[Mapping[str, Any]] = None,
        cancel: Optional[threading.Event] = None,
        on_progress: Optional[ProgressFn] = None,
    ) -> ChunkRun:
        """Run every chunk in order and return the per-chunk outcome.

        Chunk-level errors are recorded on the task and never stop the loop.
        Cancellation stops scheduling new chunks; finished ones are kept.
        """
        size = chunk_size or self.settings.chunk_size
        run = ChunkRun(tasks=plan_chunks(total_frames, size))
        count = len(run.tasks)
        reporter = ProgressReporter(count, on_progress)
        logger.info("Rendering %d frames in %d chunks of up to %d", total_frames, count, size)

        for task in run.tasks:
            try:
                if task.index > 0:
                    self._sleep(self.settings.settle_before_chunk_s, cancel, "settle before chunk")
                self.run_chunk(task, count, template, stem=stem, resources=resources, values=values or {},
                               cancel=cancel, reporter=reporter)
            except OperationCancelled as exc:
                if task.status == ChunkStatus.RUNNING:
                    task.status = ChunkStatus.FAILED
                    task.error = str(exc)
                run.cancelled = True
                logger.warning("Cancelled at chunk %d/%d", task.number, count)
                break
            except (ChunkflowError, OSError) as exc:
                task.status = ChunkStatus.FAILED
                task.error = str(exc)
                logger.error("Chunk %d/%d failed: %s", task.number, count, exc)
            reporter.report(task.index, 1.0, f"Chunk {task.number}/{count} {task.status.value}")

        logger.info(
            "Chunk run finished: %d succeeded, %d failed, %d not run",
            len(run.succeeded),
            len(run.failed),
            count - len(run.succeeded) - len(run.failed),
        )
        return run

    def run_chunk(
        self,
        task: ChunkTask,
        count: int,
        template: Mapping[str, Any],
        *,
        stem: str,
        resources: Sequence[ChunkResource],
        values: Mapping[str, Any],
        cancel: Optional[threading.Event],
        reporter: ProgressReporter,
    ) -> None:
        task.status = ChunkStatus.RUNNING
        prefix = self.output_prefix(stem, task)
        reporter.report(task.index, 0.0, f"Chunk {task.number}/{count}: frames {task.frame_start}-{task.frame_end - 1}")

        self.manager.ensure_connected(self.session, cancel=cancel)

        uploaded: Dict[str, Any] = {}
        for res in resources:
            uploaded[res.field_name] = self.manager.upload_file(res.path, res.kind, cancel=cancel).ref

        chunk_values: Dict[str, Any] = dict(values)
        chunk_values.update(uploaded)
        chunk_values[FRAME_START] = task.frame_start
        chunk_values[FRAME_COUNT] = task.frame_count
        chunk_values[OUTPUT_PREFIX] = (
            f"{self.settings.output_subfolder}/{prefix}" if self.settings.output_subfolder else prefix
        )
        document = PayloadDocument(template)
        applied = materialize(document, self.fields, chunk_values)
        logger.debug("Chunk %d payload: %d fields written", task.number, applied)

        # Outputs older than this belong to an earlier submission.
        not_before = time.time() - self.settings.artifact_clock_skew_s
        task.correlation_id = self.manager.submit_job(self.session, document.to_dict(), cancel=cancel)

        def on_event(event: ProgressEvent) -> None:
            reporter.report(task.index, event.fraction, f"Chunk {task.number}/{count}: step {event.value}/{event.max}")

        result = self.correlator.await_completion(
            task.correlation_id,
            timeout_s=self.settings.chunk_timeout_s,
            fallback_after_s=self.settings.fallback_after_s,
            cancel=cancel,
            on_progress=on_event,
            confirm=lambda: self._probe(prefix, not_before),
            confirm_interval_s=self.settings.confirm_interval_s,
        )

        self._sleep(self.settings.settle_after_chunk_s, cancel, "settle after chunk")
        artifact = self._locate(prefix, result, cancel, not_before)
        if artifact is None:
            raise PartialChunkFailure(
                f"Chunk {task.number} completed but no output matching {prefix!r} was found",
                chunk_index=task.index,
            )
        task.artifact_path = artifact
        task.status = ChunkStatus.SUCCEEDED
        logger.info("Chunk %d/%d done (%s): %s", task.number, count, result.resolved_by.value, artifact)

    def _probe(self, prefix: str, not_before: float) -> Optional[Path]:
        return find_recent_artifact(
            self.probe_dirs(),
            prefix,
            window_s=self.settings.artifact_window_s,
            min_age_s=self.settings.artifact_min_age_s,
            extensions=self.settings.artifact_extensions,
            not_before=not_before,
        )

    def _locate(
        self, prefix: str, result: CompletionResult, cancel: Optional[threading.Event], not_before: float
    ) -> Optional[Path]:
        if result.artifact_path is not None and result.artifact_path.exists():
            return result.artifact_path
        found = wait_for_artifact(
            self.probe_dirs(),
            prefix,
            timeout_s=self.settings.artifact_timeout_s,
            window_s=self.settings.artifact_window_s,
            min_age_s=self.settings.artifact_min_age_s,
            extensions=self.settings.artifact_extensions,
            not_before=not_before,
            cancel=cancel,
        )
        if found is not None:
            return found
        if result.output_ref is not None and self.output_dirs:
            candidate = resolve_output_path(result.output_ref, self.output_dirs)
            if candidate is not None and candidate.exists():
                return candidate
        return None
