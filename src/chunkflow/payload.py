"""Narrow accessor for mutating opaque payload templates.

Templates are node-graph JSON documents. Nothing here interprets them; a
small set of configured ``/``-separated paths (``"14/inputs/skip_first_frames"``)
is overwritten per chunk.
"""

from __future__ import annotations

import copy
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Tuple

from .errors import PayloadFieldError

logger = logging.getLogger(__name__)

FRAME_START = "frame_start"
FRAME_COUNT = "frame_count"
WIDTH = "width"
HEIGHT = "height"
OUTPUT_PREFIX = "output_prefix"


def split_path(path: str) -> List[str]:
    parts = [p for p in str(path).strip("/").split("/") if p]
    if not parts:
        raise PayloadFieldError(f"Empty payload path: {path!r}")
    return parts


class PayloadDocument:
    """Deep copy of a template with ``get_field``/``set_field`` by path."""

    def __init__(self, template: Mapping[str, Any]):
        if not isinstance(template, Mapping):
            raise TypeError("payload template must be a mapping")
        self._doc: Dict[str, Any] = copy.deepcopy(dict(template))

    def _parent(self, path: str) -> Tuple[Any, Any]:
        parts = split_path(path)
        node: Any = self._doc
        for i, part in enumerate(parts[:-1]):
            node = self._step(node, part, parts[: i + 1], path)
        return node, parts[-1]

    @staticmethod
    def _step(node: Any, part: str, walked: List[str], path: str) -> Any:
        if isinstance(node, dict):
            if part not in node:
                raise PayloadFieldError(f"Payload path {path!r} missing at {'/'.join(walked)!r}")
            return node[part]
        if isinstance(node, list):
            try:
                return node[int(part)]
            except (ValueError, IndexError) as exc:
                raise PayloadFieldError(f"Payload path {path!r} missing at {'/'.join(walked)!r}") from exc
        raise PayloadFieldError(f"Payload path {path!r} runs through a scalar at {'/'.join(walked)!r}")

    def get_field(self, path: str) -> Any:
        parent, leaf = self._parent(path)
        return self._step(parent, leaf, split_path(path), path)

    def set_field(self, path: str, value: Any) -> None:
        """Overwrite the leaf at ``path``.

        Intermediate keys must exist; the leaf itself may be new on a mapping.
        """
        parent, leaf = self._parent(path)
        if isinstance(parent, dict):
            parent[leaf] = value
        elif isinstance(parent, list):
            try:
                parent[int(leaf)] = value
            except (ValueError, IndexError) as exc:
                raise PayloadFieldError(f"Payload path {path!r} has no index {leaf!r}") from exc
        else:
            raise PayloadFieldError(f"Payload path {path!r} runs through a scalar")

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._doc)


class FieldMap:
    """Logical field name -> one or more payload paths."""

    def __init__(self, bindings: Mapping[str, Iterable[str]] | None = None):
        self._bindings: Dict[str, Tuple[str, ...]] = {}
        for name, paths in (bindings or {}).items():
            self.bind(name, paths)

    def bind(self, name: str, paths: Iterable[str] | str) -> None:
        if isinstance(paths, str):
            paths = [paths]
        self._bindings[str(name)] = tuple(str(p) for p in paths)

    def paths(self, name: str) -> Tuple[str, ...]:
        return self._bindings.get(name, ())

    def names(self) -> List[str]:
        return list(self._bindings)

    def __contains__(self, name: object) -> bool:
        return name in self._bindings


def load_template(path: Path) -> Dict[str, Any]:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Payload template not found: {path}")
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"Payload template must be a JSON object: {path}")
    logger.info("Loaded payload template %s (%d nodes)", path.name, len(data))
    return data


def materialize(
    document: PayloadDocument,
    fields: FieldMap,
    values: Mapping[str, Any],
) -> int:
    """Write every bound value into ``document``. Returns the number of paths written.

    Values without a binding and paths missing from the template are logged
    and skipped.
    """
    applied = 0
    for name, value in values.items():
        paths = fields.paths(name)
        if not paths:
            logger.debug("No payload binding for %r; skipping", name)
            continue
        for path in paths:
            try:
                document.set_field(path, value)
            except PayloadFieldError as exc:
                logger.warning("Skipping %s: %s", name, exc)
                continue
            applied += 1
    return applied
