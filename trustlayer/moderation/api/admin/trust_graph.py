"""Admin endpoints for the trust graph recompute job."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel

from trustlayer.moderation.api.deps import get_staff_actor, to_http_error
from trustlayer.moderation.domain.accounts import AccountRecord
from trustlayer.moderation.domain.container import get_dispatcher
from trustlayer.moderation.domain.errors import ModerationWorkflowError
from trustlayer.moderation.jobs.trust_graph import RecomputeDispatcher, TrustGraphStatus

router = APIRouter(prefix="/api/mod/v1/admin/trust-graph", tags=["moderation-admin-trust-graph"])


class RecomputeAcceptedOut(BaseModel):
    status: str = "accepted"
    started_at: datetime


class TrustGraphStatusOut(BaseModel):
    last_computed_at: datetime | None
    next_scheduled_at: datetime | None
    computation_duration_ms: int | None
    total_nodes: int
    total_edges: int
    clusters_flagged: int
    job_state: str
    last_error: str | None = None

    @classmethod
    def from_domain(cls, snapshot: TrustGraphStatus) -> "TrustGraphStatusOut":
        return cls(
            last_computed_at=snapshot.last_computed_at,
            next_scheduled_at=snapshot.next_scheduled_at,
            computation_duration_ms=snapshot.computation_duration_ms,
            total_nodes=snapshot.total_nodes,
            total_edges=snapshot.total_edges,
            clusters_flagged=snapshot.clusters_flagged,
            job_state=snapshot.job.state.value,
            last_error=snapshot.job.last_error,
        )


def get_dispatcher_dep() -> RecomputeDispatcher:
    return get_dispatcher()


@router.post("/recompute", response_model=RecomputeAcceptedOut, status_code=status.HTTP_202_ACCEPTED)
async def trigger_recompute(
    actor: AccountRecord = Depends(get_staff_actor),
    dispatcher: RecomputeDispatcher = Depends(get_dispatcher_dep),
) -> RecomputeAcceptedOut:
    try:
        started_at = await dispatcher.trigger()
    except ModerationWorkflowError as exc:
        raise to_http_error(exc) from exc
    return RecomputeAcceptedOut(started_at=started_at)


@router.get("/status", response_model=TrustGraphStatusOut)
async def trust_graph_status(
    _: AccountRecord = Depends(get_staff_actor),
    dispatcher: RecomputeDispatcher = Depends(get_dispatcher_dep),
) -> TrustGraphStatusOut:
    return TrustGraphStatusOut.from_domain(await dispatcher.status())
