"""
Rights chain editing routes.

- POST /api/chains/validate: validate a chain without storing it
- PUT /api/works/{work_id}: register or update a work (chain validated on save)
- GET /api/works/{work_id}: fetch a stored work

Invariant violations come back as data (`valid: false`); structurally broken
chains are rejected with 422 and the error `kind`.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, HTTPException, Request

from concord.core.db.models import UpsertWork
from concord.core.rights import RightsChain, StructuralChainError, TerritoryChain
from concord.core.validator import RightsChainValidator
from concord.web.helpers import read_json

if TYPE_CHECKING:
    from concord.core.catalog_db import CatalogDb

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chains"])

_catalog_db: CatalogDb | None = None
_validator: RightsChainValidator | None = None


def register_chain_routes(
    app, catalog_db: CatalogDb, validator: RightsChainValidator | None = None
) -> None:
    global _catalog_db, _validator
    _catalog_db = catalog_db
    _validator = validator or RightsChainValidator()
    app.include_router(router)


def _structural_error(e: StructuralChainError) -> HTTPException:
    return HTTPException(status_code=422, detail=e.to_dict())


@router.post("/api/chains/validate")
async def validate_chain(request: Request) -> dict[str, Any]:
    """Validate a rights chain.

    Request body: [territory, ...] or {"chain": [territory, ...]}
    """
    if _validator is None:
        raise HTTPException(status_code=503, detail="Server not initialized")

    body = await read_json(request)
    payload = body.get("chain") if isinstance(body, dict) else body
    if not isinstance(payload, list):
        raise HTTPException(status_code=400, detail="Expected a list of territories")

    try:
        territories = [TerritoryChain.from_payload(item) for item in payload]
        result = _validator.validate(territories)
    except StructuralChainError as e:
        raise _structural_error(e) from None

    response = result.to_dict()
    response["chain"] = [territory.to_payload() for territory in territories]
    return response


@router.put("/api/works/{work_id}")
async def upsert_work(work_id: str, request: Request) -> dict[str, Any]:
    """Register or update a work.

    Request body: {"account_id": ..., "title": ..., "iswc": ..., "rights_chain": [...]}
    """
    if _catalog_db is None or _validator is None:
        raise HTTPException(status_code=503, detail="Server not initialized")

    body = await read_json(request)
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Expected a JSON object")
    account_id = body.get("account_id")
    title = body.get("title")
    iswc = body.get("iswc")
    if not isinstance(account_id, str) or not account_id.strip():
        raise HTTPException(status_code=400, detail="Missing 'account_id' in request body")
    if not isinstance(title, str) or not title.strip():
        raise HTTPException(status_code=400, detail="Missing 'title' in request body")
    if iswc is not None and not isinstance(iswc, str):
        raise HTTPException(status_code=400, detail="'iswc' must be a string")

    try:
        chain = RightsChain.from_payload(body.get("rights_chain") or [])
        result = _validator.validate(chain)
    except StructuralChainError as e:
        raise _structural_error(e) from None

    record = await _catalog_db.upsert_work(
        UpsertWork(
            work_id=work_id,
            account_id=account_id,
            title=title,
            iswc=iswc,
            rights_chain=chain.to_payload(),
            valid=result.is_valid,
            validation_errors=tuple(result.errors()),
        )
    )
    await _catalog_db.commit()
    logger.info("Stored work %s (valid=%s)", record.work_id, record.valid)

    response = record.to_dict()
    response["validation"] = result.to_dict()
    return response


@router.get("/api/works/{work_id}")
async def get_work(work_id: str) -> dict[str, Any]:
    if _catalog_db is None:
        raise HTTPException(status_code=503, detail="Server not initialized")
    record = await _catalog_db.get_work(work_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Work not found")
    return record.to_dict()
