"""
Conflict queue routes.

- GET /api/conflicts: filtered, paginated triage list
- GET /api/conflicts/{id}: one conflict with its match group and members
- PUT /api/conflicts/{id}/resolve: resolve (idempotent)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, HTTPException, Query, Request

from concord.core import NotFoundError
from concord.core.enums import ConflictType, Severity
from concord.web.helpers import read_json, to_dict

if TYPE_CHECKING:
    from concord.core.conflicts import ConflictQueue

logger = logging.getLogger(__name__)

router = APIRouter(tags=["conflicts"])

_conflict_queue: ConflictQueue | None = None

_STATUS_FILTERS: dict[str, bool | None] = {
    "unresolved": False,
    "resolved": True,
    "all": None,
}


def register_conflict_routes(app, conflict_queue: ConflictQueue) -> None:
    global _conflict_queue
    _conflict_queue = conflict_queue
    app.include_router(router)


def _require_queue() -> ConflictQueue:
    if _conflict_queue is None:
        raise HTTPException(status_code=503, detail="Server not initialized")
    return _conflict_queue


@router.get("/api/conflicts")
async def list_conflicts(
    status: str = "all",
    conflict_type: str | None = Query(None, alias="type"),
    severity: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> dict[str, Any]:
    """List conflicts, most severe first.

    Query params:
        status: unresolved | resolved | all
        type: overclaim | data_mismatch | ownership_dispute
        severity: low | medium | high | critical
    """
    queue = _require_queue()

    if status not in _STATUS_FILTERS:
        raise HTTPException(status_code=400, detail=f"Unknown status {status!r}")
    try:
        type_filter = ConflictType(conflict_type) if conflict_type else None
        severity_filter = Severity(severity) if severity else None
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from None

    try:
        items, total = await queue.list_conflicts(
            resolved=_STATUS_FILTERS[status],
            conflict_type=type_filter,
            severity=severity_filter,
            offset=offset,
            limit=limit,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from None

    return {
        "count": total,
        "offset": offset,
        "limit": limit,
        "conflicts": [to_dict(c) for c in items],
    }


@router.get("/api/conflicts/{conflict_id}")
async def get_conflict(conflict_id: int) -> dict[str, Any]:
    queue = _require_queue()
    try:
        detail = await queue.get_conflict(conflict_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Conflict not found") from None

    result = to_dict(detail.conflict)
    group = to_dict(detail.group) if detail.group is not None else None
    if group is not None:
        group["members"] = [to_dict(m) for m in detail.members]
    result["match_group"] = group
    return result


@router.put("/api/conflicts/{conflict_id}/resolve")
async def resolve_conflict(conflict_id: int, request: Request) -> dict[str, Any]:
    """Resolve a conflict.

    Request body (optional): {"resolution_notes": "..."}
    """
    queue = _require_queue()

    body = await read_json(request, required=False)
    notes = body.get("resolution_notes") if isinstance(body, dict) else None
    if notes is not None and not isinstance(notes, str):
        raise HTTPException(status_code=400, detail="'resolution_notes' must be a string")

    try:
        conflict = await queue.resolve_conflict(conflict_id, notes or None)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Conflict not found") from None
    return to_dict(conflict)
