import queue
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

from chunkflow.backend.http import UploadedFile
from chunkflow.backend.session import ConnectionState, Session
from chunkflow.config import BackendSettings


def make_session(client_id: str = "client-1", maxsize: int = 100) -> Session:
    return Session(client_id=client_id, events=queue.Queue(maxsize=maxsize), state=ConnectionState.CONNECTED)


class FakeManager:
    """Stands in for ConnectionManager; ``on_submit`` decides what each submission does."""

    def __init__(self, settings: Optional[BackendSettings] = None):
        self.settings = settings or BackendSettings()
        self.payloads: List[Dict[str, Any]] = []
        self.uploads: List[Path] = []
        self.ensure_calls = 0
        self.on_submit: Optional[Callable[[Session, Dict[str, Any], str], None]] = None
        self.disconnected: List[Session] = []
        self._lock = threading.Lock()

    def ensure_connected(self, session, *, cancel=None):
        self.ensure_calls += 1

    def connect(self, client_id=None, *, cancel=None):
        return make_session(client_id or "client-job")

    def disconnect(self, session):
        self.disconnected.append(session)

    def upload_file(self, path, kind="image", *, cancel=None):
        self.uploads.append(Path(path))
        return UploadedFile(name=Path(path).name)

    def submit_job(self, session, payload, *, cancel=None):
        with self._lock:
            self.payloads.append(payload)
            prompt_id = f"prompt-{len(self.payloads)}"
        if self.on_submit is not None:
            self.on_submit(session, payload, prompt_id)
        return prompt_id


@pytest.fixture
def session() -> Session:
    return make_session()


@pytest.fixture
def fake_manager() -> FakeManager:
    return FakeManager()
