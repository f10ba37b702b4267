from typing import Any, Optional, Set
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from enum import Enum
from uuid import UUID

from pydantic import BaseModel

from ...errors import SnapshotError

_IMMUTABLE_TYPES = (str, bytes, int, float, bool, type(None), Decimal, UUID, Enum, datetime, date, time, timedelta)


def snapshot(value: Any, _path: Optional[Set[int]] = None) -> Any:
    """Deep-copy a tool result so callers can never mutate cached state.

    Containers are copied recursively, pydantic models are dumped to plain
    data, immutable scalars are shared. Cycles and unknown object types raise
    SnapshotError instead of being silently mangled.
    """

    if isinstance(value, _IMMUTABLE_TYPES):
        return value

    if isinstance(value, BaseModel):
        return snapshot(value.model_dump(), _path)

    path = _path if _path is not None else set()
    marker = id(value)
    if marker in path:
        raise SnapshotError("Result contains a reference cycle", {"type": type(value).__name__})

    path.add(marker)
    try:
        if isinstance(value, dict):
            return {key: snapshot(item, path) for key, item in value.items()}
        if isinstance(value, list):
            return [snapshot(item, path) for item in value]
        if isinstance(value, tuple):
            return tuple(snapshot(item, path) for item in value)
        if isinstance(value, (set, frozenset)):
            return type(value)(snapshot(item, path) for item in value)
    finally:
        path.discard(marker)

    raise SnapshotError("Result type cannot be snapshotted", {"type": type(value).__name__})
