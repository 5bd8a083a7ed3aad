"""Admin endpoints for behavioral heuristic flags."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from trustlayer.moderation.api.deps import PageOut, get_staff_actor, to_http_error
from trustlayer.moderation.domain.accounts import AccountRecord
from trustlayer.moderation.domain.container import get_heuristics
from trustlayer.moderation.domain.errors import ModerationWorkflowError
from trustlayer.moderation.domain.heuristics import BehavioralFlag, BehavioralHeuristicsEngine, FlagStatus, FlagType

router = APIRouter(prefix="/api/mod/v1/admin/behavioral-flags", tags=["moderation-admin-flags"])


class BehavioralFlagOut(BaseModel):
    id: int
    flag_type: str
    affected_dids: list[str]
    details: str
    community_did: str | None
    status: str
    detected_at: datetime

    @classmethod
    def from_domain(cls, flag: BehavioralFlag) -> "BehavioralFlagOut":
        return cls(
            id=flag.id or 0,
            flag_type=flag.flag_type.value,
            affected_dids=list(flag.affected_dids),
            details=flag.details,
            community_did=flag.community_did,
            status=flag.status.value,
            detected_at=flag.detected_at,
        )


class FlagStatusIn(BaseModel):
    status: FlagStatus


def get_heuristics_dep() -> BehavioralHeuristicsEngine:
    return get_heuristics()


@router.get("", response_model=PageOut[BehavioralFlagOut])
async def list_flags(
    *,
    flag_type: FlagType | None = Query(default=None),
    status: FlagStatus | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int | None = Query(default=None),
    _: AccountRecord = Depends(get_staff_actor),
    engine: BehavioralHeuristicsEngine = Depends(get_heuristics_dep),
) -> PageOut[BehavioralFlagOut]:
    try:
        page = await engine.list_flags(flag_type=flag_type, status=status, cursor=cursor, limit=limit)
    except ModerationWorkflowError as exc:
        raise to_http_error(exc) from exc
    return PageOut[BehavioralFlagOut](items=[BehavioralFlagOut.from_domain(flag) for flag in page.items], cursor=page.cursor)


@router.put("/{flag_id}/status", response_model=BehavioralFlagOut)
async def update_flag_status(
    flag_id: int,
    body: FlagStatusIn,
    _: AccountRecord = Depends(get_staff_actor),
    engine: BehavioralHeuristicsEngine = Depends(get_heuristics_dep),
) -> BehavioralFlagOut:
    try:
        flag = await engine.update_flag_status(flag_id, body.status)
    except ModerationWorkflowError as exc:
        raise to_http_error(exc) from exc
    return BehavioralFlagOut.from_domain(flag)
