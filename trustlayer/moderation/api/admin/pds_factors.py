"""Admin endpoints for per-PDS trust factors."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from trustlayer.moderation.api.deps import PageOut, get_staff_actor, to_http_error
from trustlayer.moderation.domain.accounts import AccountRecord
from trustlayer.moderation.domain.container import get_pds_service
from trustlayer.moderation.domain.errors import ModerationWorkflowError
from trustlayer.moderation.domain.reputation import PdsTrustFactor, PdsTrustFactorService

router = APIRouter(prefix="/api/mod/v1/admin/pds-trust-factors", tags=["moderation-admin-pds"])


class PdsTrustFactorOut(BaseModel):
    id: int
    pds_host: str
    trust_factor: float
    is_default: bool
    updated_at: datetime

    @classmethod
    def from_domain(cls, factor: PdsTrustFactor) -> "PdsTrustFactorOut":
        return cls(
            id=factor.id,
            pds_host=factor.pds_host,
            trust_factor=factor.trust_factor,
            is_default=factor.is_default,
            updated_at=factor.updated_at,
        )


class PdsTrustFactorIn(BaseModel):
    pds_host: str = Field(..., min_length=1)
    trust_factor: float


def get_pds_service_dep() -> PdsTrustFactorService:
    return get_pds_service()


@router.get("", response_model=PageOut[PdsTrustFactorOut])
async def list_pds_trust_factors(
    *,
    cursor: str | None = Query(default=None),
    limit: int | None = Query(default=None),
    _: AccountRecord = Depends(get_staff_actor),
    service: PdsTrustFactorService = Depends(get_pds_service_dep),
) -> PageOut[PdsTrustFactorOut]:
    try:
        page = await service.list_factors(cursor=cursor, limit=limit)
    except ModerationWorkflowError as exc:
        raise to_http_error(exc) from exc
    return PageOut[PdsTrustFactorOut](items=[PdsTrustFactorOut.from_domain(item) for item in page.items], cursor=page.cursor)


@router.put("", response_model=PdsTrustFactorOut)
async def upsert_pds_trust_factor(
    body: PdsTrustFactorIn,
    _: AccountRecord = Depends(get_staff_actor),
    service: PdsTrustFactorService = Depends(get_pds_service_dep),
) -> PdsTrustFactorOut:
    try:
        factor = await service.upsert_factor(body.pds_host, body.trust_factor)
    except ModerationWorkflowError as exc:
        raise to_http_error(exc) from exc
    return PdsTrustFactorOut.from_domain(factor)
