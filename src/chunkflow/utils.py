"""Small helpers shared across chunkflow.

- subprocess_flags(): hide console windows for child processes on Windows
- utc_iso(): UTC timestamp in ISO format
- wait_or_cancel(): interruptible sleep used at every settle delay
"""

from __future__ import annotations

import sys
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .errors import OperationCancelled


def subprocess_flags() -> Dict[str, Any]:
    """Return subprocess flags to hide the console window on Windows.

    Usage:
        proc = subprocess.Popen(cmd, **subprocess_flags())
    """
    if sys.platform == "win32":
        # CREATE_NO_WINDOW = 0x08000000
        return {"creationflags": 0x08000000}
    return {}


def utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def raise_if_cancelled(cancel: Optional[threading.Event], what: str = "operation") -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelled(f"{what} cancelled")


def wait_or_cancel(seconds: float, cancel: Optional[threading.Event], what: str = "delay") -> None:
    """Sleep for ``seconds`` unless ``cancel`` is set first.

    Raises:
        OperationCancelled: if the cancel event is set before or during the wait
    """
    raise_if_cancelled(cancel, what)
    if seconds <= 0:
        return
    if cancel is None:
        threading.Event().wait(seconds)
        return
    if cancel.wait(seconds):
        raise OperationCancelled(f"{what} cancelled")
