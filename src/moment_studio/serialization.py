"""JSON helpers shared by snapshot storage and agent parsing."""

from __future__ import annotations

import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import UUID


def json_serializer(obj: Any) -> Any:
    """
    Serializer for the non-standard types found in session state.

    Supported:
    - datetime, date: ISO-8601 strings
    - Decimal: float
    - UUID, Path: str
    - Enum: its value
    - pydantic models: ``model_dump(mode="json", by_alias=True)``
    - sets and frozensets: sorted lists

    Raw bytes are rejected; binary assets belong on disk, not in snapshots.
    """
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, (UUID, Path)):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    if isinstance(obj, (bytes, bytearray)):
        raise TypeError("Binary payloads cannot be written to JSON snapshots")
    # Pydantic model
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json", by_alias=True)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def dumps(data: Any, **kwargs) -> str:
    """Serialize ``data`` to a JSON string, handling the special types above."""
    return json.dumps(data, default=json_serializer, ensure_ascii=False, **kwargs)


def loads(s: str, **kwargs) -> Any:
    return json.loads(s, **kwargs)
