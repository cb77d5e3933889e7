"""Exception taxonomy for chunkflow.

Chunk-level errors are caught by the orchestrator loop; job and stitch level
errors are turned into a ``RenderOutcome`` by :mod:`chunkflow.pipeline`.
"""

from __future__ import annotations

from typing import Optional


class ChunkflowError(Exception):
    """Base exception for chunkflow errors."""
    pass


class BackendConnectionError(ChunkflowError):
    """Raised when the backend cannot be reached (retryable)."""
    pass


class SubmissionError(ChunkflowError):
    """Raised when the backend rejects a submitted payload."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, node_errors: Optional[dict] = None):
        super().__init__(message)
        self.status_code = status_code
        self.node_errors = node_errors or {}


class UploadError(ChunkflowError):
    """Raised when a reference file cannot be uploaded."""
    pass


class ExecutionTimeoutError(ChunkflowError):
    """Raised when a job exceeds its hard wall-clock deadline."""

    def __init__(self, message: str, *, correlation_id: str, timeout_s: float):
        super().__init__(message)
        self.correlation_id = correlation_id
        self.timeout_s = timeout_s


class CorrelationMismatch(ChunkflowError):
    """Completion for an id nobody is waiting on. Logged, never raised to callers."""
    pass


class PartialChunkFailure(ChunkflowError):
    """Raised when a chunk finished but produced no artifact on disk."""

    def __init__(self, message: str, *, chunk_index: int):
        super().__init__(message)
        self.chunk_index = chunk_index


class StitchError(ChunkflowError):
    """Raised when ffmpeg fails or times out while joining chunks."""
    pass


class OperationCancelled(ChunkflowError):
    """Raised at a suspension point once the cancel signal is set."""
    pass


class PayloadFieldError(ChunkflowError, KeyError):
    """Raised when a payload path does not exist in the template."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""
