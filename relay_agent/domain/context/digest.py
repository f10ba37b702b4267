"""
Stable identity for tool calls.

Two calls with the same tool name and deep-equal arguments (ignoring key order
and keys whose value is None) always share a digest. The digest is the dedup
and cache key of the tool execution cache.
"""

from typing import Any, Dict, Mapping, Optional, Set
from datetime import date, datetime
from enum import Enum
import hashlib
import json

from pydantic import BaseModel

from ..errors import DigestError


def normalize_arguments(value: Any, tool_name: str = "", _path: Optional[Set[int]] = None) -> Any:
    """Recursively canonicalize a tool argument structure"""

    path = _path if _path is not None else set()

    if isinstance(value, BaseModel):
        value = value.model_dump(exclude_none=True)

    if isinstance(value, Mapping):
        marker = id(value)
        if marker in path:
            raise DigestError(tool_name, "arguments contain a reference cycle")
        path.add(marker)
        try:
            return {
                str(key): normalize_arguments(value[key], tool_name, path)
                for key in sorted(value.keys(), key=str)
                if value[key] is not None
            }
        finally:
            path.discard(marker)

    if isinstance(value, (list, tuple)):
        marker = id(value)
        if marker in path:
            raise DigestError(tool_name, "arguments contain a reference cycle")
        path.add(marker)
        try:
            return [normalize_arguments(item, tool_name, path) for item in value]
        finally:
            path.discard(marker)

    if isinstance(value, (set, frozenset)):
        items = [normalize_arguments(item, tool_name, path) for item in value]
        return sorted(items, key=lambda item: json.dumps(item, sort_keys=True, default=str))

    if isinstance(value, Enum):
        return value.value

    if isinstance(value, (datetime, date)):
        return value.isoformat()

    return value


def canonical_form(tool_name: str, args: Optional[Mapping[str, Any]]) -> str:
    normalized = normalize_arguments(args or {}, tool_name)
    return json.dumps(
        {"tool": tool_name, "args": normalized},
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def digest(tool_name: str, args: Optional[Mapping[str, Any]]) -> str:
    """128-bit hex digest of a tool name and its normalized arguments"""

    canonical = canonical_form(tool_name, args)
    return hashlib.md5(canonical.encode("utf-8"), usedforsecurity=False).hexdigest()


def strip_internal_keys(args: Optional[Mapping[str, Any]], internal_keys: Set[str]) -> Dict[str, Any]:
    """Drop bookkeeping keys the LLM adds to tool calls (reasoning, timestamps, ...)"""
    return {key: value for key, value in (args or {}).items() if key not in internal_keys}
