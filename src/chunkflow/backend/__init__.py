"""Backend connectivity: REST transport, event stream and sessions."""

from .events import (
    CompletedEvent,
    EventClassifier,
    ExecutingEvent,
    ExecutionEvent,
    GenericEvent,
    OutputRef,
    ProgressEvent,
    StartedEvent,
    StatusEvent,
    UnrecognizedEvent,
    classify_frame,
    find_video_output,
)
from .http import BackendHttpClient, QueueState, UploadedFile
from .session import ConnectionManager, ConnectionState, Session, retry_call
from .stream import EventStream

__all__ = [
    # Events
    "CompletedEvent",
    "EventClassifier",
    "ExecutingEvent",
    "ExecutionEvent",
    "GenericEvent",
    "OutputRef",
    "ProgressEvent",
    "StartedEvent",
    "StatusEvent",
    "UnrecognizedEvent",
    "classify_frame",
    "find_video_output",
    # Transport
    "BackendHttpClient",
    "QueueState",
    "UploadedFile",
    "EventStream",
    # Sessions
    "ConnectionManager",
    "ConnectionState",
    "Session",
    "retry_call",
]
