"""
Serialization helpers for the HTTP layer.

Row dataclasses carry enums and tuples; responses want plain JSON values.
"""

from __future__ import annotations

import json
from dataclasses import fields, is_dataclass
from enum import Enum
from typing import Any

from fastapi import HTTPException, Request

from concord.core.db.models import MatchingJobRow


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return {str(_plain(k)): _plain(v) for k, v in value.items()}
    if is_dataclass(value) and not isinstance(value, type):
        return to_dict(value)
    return value


def to_dict(row: Any) -> dict[str, Any]:
    """
    Convert a row (dict or dataclass) to a JSON-friendly dictionary.

    Enums become their values and tuples become lists, recursively.
    """
    if isinstance(row, dict):
        return {str(k): _plain(v) for k, v in row.items()}
    if is_dataclass(row) and not isinstance(row, type):
        return {f.name: _plain(getattr(row, f.name)) for f in fields(row)}
    raise TypeError(f"Cannot serialize {type(row).__name__}")


def job_to_dict(job: MatchingJobRow) -> dict[str, Any]:
    result = to_dict(job)
    result["progress"] = job.progress
    return result


async def read_json(request: Request, *, required: bool = True) -> Any:
    """Parse the request body as JSON; an empty body is None unless `required`."""
    raw = await request.body()
    if not raw.strip():
        if required:
            raise HTTPException(status_code=400, detail="Missing request body")
        return None
    try:
        return json.loads(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body is not valid JSON") from None
