"""Public reputation and per-community trust status lookups."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from trustlayer.moderation.api.deps import to_http_error
from trustlayer.moderation.domain.container import get_reputation
from trustlayer.moderation.domain.errors import ModerationWorkflowError
from trustlayer.moderation.domain.reputation import Reputation, ReputationCalculator, TrustStatus

router = APIRouter(prefix="/api/mod/v1", tags=["moderation-reputation"])


class BreakdownOut(BaseModel):
    topic_count: int
    reply_count: int
    reactions_received: int
    trust_score: float
    pds_trust_factor: float
    cluster_diversity_factor: float


class ReputationOut(BaseModel):
    did: str
    handle: str
    reputation: int
    breakdown: BreakdownOut
    community_count: int

    @classmethod
    def from_domain(cls, reputation: Reputation) -> "ReputationOut":
        breakdown = reputation.breakdown
        return cls(
            did=reputation.did,
            handle=reputation.handle,
            reputation=reputation.reputation,
            breakdown=BreakdownOut(
                topic_count=breakdown.topic_count,
                reply_count=breakdown.reply_count,
                reactions_received=breakdown.reactions_received,
                trust_score=breakdown.trust_score,
                pds_trust_factor=breakdown.pds_trust_factor,
                cluster_diversity_factor=breakdown.cluster_diversity_factor,
            ),
            community_count=reputation.community_count,
        )


class TrustStatusOut(BaseModel):
    did: str
    community_did: str
    approved_post_count: int
    is_trusted: bool
    trusted_at: datetime | None
    is_seed: bool
    is_staff: bool

    @classmethod
    def from_domain(cls, status: TrustStatus) -> "TrustStatusOut":
        return cls(
            did=status.did,
            community_did=status.community_did,
            approved_post_count=status.approved_post_count,
            is_trusted=status.is_trusted,
            trusted_at=status.trusted_at,
            is_seed=status.is_seed,
            is_staff=status.is_staff,
        )


def get_reputation_dep() -> ReputationCalculator:
    return get_reputation()


@router.get("/reputation/{did}", response_model=ReputationOut)
async def get_account_reputation(did: str, calculator: ReputationCalculator = Depends(get_reputation_dep)) -> ReputationOut:
    try:
        reputation = await calculator.get_reputation(did)
    except ModerationWorkflowError as exc:
        raise to_http_error(exc) from exc
    return ReputationOut.from_domain(reputation)


@router.get("/trust-status/{did}", response_model=TrustStatusOut)
async def get_trust_status(
    did: str,
    community: str = Query(..., min_length=1),
    calculator: ReputationCalculator = Depends(get_reputation_dep),
) -> TrustStatusOut:
    try:
        status = await calculator.get_trust_status(did, community)
    except ModerationWorkflowError as exc:
        raise to_http_error(exc) from exc
    return TrustStatusOut.from_domain(status)
