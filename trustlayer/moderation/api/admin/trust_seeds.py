"""Admin endpoints for trust seed management."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, Field

from trustlayer.moderation.api.deps import PageOut, get_staff_actor, to_http_error
from trustlayer.moderation.domain.accounts import AccountRecord
from trustlayer.moderation.domain.container import get_seed_service
from trustlayer.moderation.domain.errors import ModerationWorkflowError
from trustlayer.moderation.domain.scope import scope_for
from trustlayer.moderation.domain.trust import MAX_SEED_REASON_LENGTH, TrustSeed, TrustSeedService

router = APIRouter(prefix="/api/mod/v1/admin/trust-seeds", tags=["moderation-admin-trust-seeds"])


class TrustSeedOut(BaseModel):
    id: int
    did: str
    community_id: str | None
    added_by: str
    reason: str | None
    created_at: datetime
    implicit: bool
    handle: str | None = None
    display_name: str | None = None

    @classmethod
    def from_domain(cls, seed: TrustSeed) -> "TrustSeedOut":
        return cls(
            id=seed.id,
            did=seed.did,
            community_id=seed.scope.community_id(),
            added_by=seed.added_by,
            reason=seed.reason,
            created_at=seed.created_at,
            implicit=seed.implicit,
            handle=seed.handle,
            display_name=seed.display_name,
        )


class TrustSeedIn(BaseModel):
    did: str = Field(..., min_length=1)
    community_id: str | None = Field(default=None, description="Omit for a global seed")
    reason: str | None = Field(default=None, max_length=MAX_SEED_REASON_LENGTH)


def get_seed_service_dep() -> TrustSeedService:
    return get_seed_service()


@router.get("", response_model=PageOut[TrustSeedOut])
async def list_trust_seeds(
    *,
    cursor: str | None = Query(default=None),
    limit: int | None = Query(default=None),
    _: AccountRecord = Depends(get_staff_actor),
    service: TrustSeedService = Depends(get_seed_service_dep),
) -> PageOut[TrustSeedOut]:
    try:
        page = await service.list_seeds(cursor=cursor, limit=limit)
    except ModerationWorkflowError as exc:
        raise to_http_error(exc) from exc
    return PageOut[TrustSeedOut](items=[TrustSeedOut.from_domain(seed) for seed in page.items], cursor=page.cursor)


@router.post("", response_model=TrustSeedOut, status_code=status.HTTP_201_CREATED)
async def create_trust_seed(
    body: TrustSeedIn,
    actor: AccountRecord = Depends(get_staff_actor),
    service: TrustSeedService = Depends(get_seed_service_dep),
) -> TrustSeedOut:
    try:
        seed = await service.create_seed(body.did, scope_for(body.community_id), added_by=actor.did, reason=body.reason)
    except ModerationWorkflowError as exc:
        raise to_http_error(exc) from exc
    return TrustSeedOut.from_domain(seed)


@router.delete("/{seed_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_trust_seed(
    seed_id: int,
    _: AccountRecord = Depends(get_staff_actor),
    service: TrustSeedService = Depends(get_seed_service_dep),
) -> Response:
    try:
        await service.delete_seed(seed_id)
    except ModerationWorkflowError as exc:
        raise to_http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)
