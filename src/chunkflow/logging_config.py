"""One-shot configuration of the ``chunkflow`` logger tree.

Entry points (the CLI, a JobManager host) call :func:`setup_logging` once.
Library modules only ever do ``logging.getLogger(__name__)`` and never add
handlers themselves.

Environment:
    CHUNKFLOW_LOG_LEVEL          level of the ``chunkflow`` logger (default INFO)
    CHUNKFLOW_LOG_MODULE_LEVELS  per-module overrides, e.g.
                                 ``backend.stream=DEBUG,correlator:warning``
"""

from __future__ import annotations

import logging
import os
import re
import sys
from pathlib import Path
from typing import Dict, Optional

ROOT_LOGGER = "chunkflow"
MODULE_LEVELS_ENV = "CHUNKFLOW_LOG_MODULE_LEVELS"
LEVEL_ENV = "CHUNKFLOW_LOG_LEVEL"
DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_OVERRIDE = re.compile(r"^\s*([\w.]+)\s*[=:]\s*(\w+)\s*$")

_CONFIGURED = False


def parse_level(value: Optional[str], default: int = logging.INFO) -> int:
    """``"debug"`` -> ``logging.DEBUG``; unknown names give ``default``."""
    if not value:
        return default
    level = getattr(logging, value.strip().upper(), None)
    return level if isinstance(level, int) else default


def _qualify(name: str) -> str:
    if name == ROOT_LOGGER or name.startswith(ROOT_LOGGER + "."):
        return name
    return f"{ROOT_LOGGER}.{name}"


def _parse_module_levels(raw: str) -> Dict[str, int]:
    # Entries that do not parse or name an unknown level are dropped.
    out: Dict[str, int] = {}
    for entry in re.split(r"[;,]+", raw or ""):
        m = _OVERRIDE.match(entry)
        if not m:
            continue
        level = getattr(logging, m.group(2).upper(), None)
        if isinstance(level, int):
            out[_qualify(m.group(1))] = level
    return out


def _attach(logger: logging.Logger, handler: logging.Handler, formatter: logging.Formatter) -> None:
    # Handlers pass everything; filtering happens on the loggers.
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def setup_logging(
    level: Optional[int] = None,
    log_file: Optional[Path] = None,
    format_string: Optional[str] = None,
) -> None:
    """Send ``chunkflow.*`` records to stderr and, optionally, ``log_file``.

    Later calls are no-ops. The tree does not propagate to the root logger,
    so host applications keep their own logging untouched.
    """
    global _CONFIGURED
    if _CONFIGURED:
        return

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(parse_level(os.getenv(LEVEL_ENV)) if level is None else level)
    logger.handlers.clear()
    logger.propagate = False

    formatter = logging.Formatter(format_string or DEFAULT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    _attach(logger, logging.StreamHandler(sys.stderr), formatter)
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        _attach(logger, logging.FileHandler(log_file, encoding="utf-8"), formatter)

    for name, module_level in _parse_module_levels(os.getenv(MODULE_LEVELS_ENV, "")).items():
        logging.getLogger(name).setLevel(module_level)

    _CONFIGURED = True
