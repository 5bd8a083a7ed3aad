"""Admin endpoints for reviewing detected sybil clusters."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from trustlayer.moderation.api.deps import PageOut, get_staff_actor, to_http_error
from trustlayer.moderation.domain.accounts import AccountRecord
from trustlayer.moderation.domain.container import get_sybil_registry
from trustlayer.moderation.domain.errors import ModerationWorkflowError
from trustlayer.moderation.domain.sybil import (
    BanPropagationReport,
    ClusterDetail,
    ClusterMember,
    ClusterSort,
    ClusterStatus,
    SybilCluster,
    SybilClusterRegistry,
)

router = APIRouter(prefix="/api/mod/v1/admin/sybil-clusters", tags=["moderation-admin-sybil"])


class SybilClusterOut(BaseModel):
    id: int
    cluster_hash: str
    internal_edge_count: int
    external_edge_count: int
    member_count: int
    suspicion_ratio: float
    status: str
    reviewed_by: str | None
    reviewed_at: datetime | None
    detected_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, cluster: SybilCluster) -> "SybilClusterOut":
        return cls(
            id=cluster.id,
            cluster_hash=cluster.cluster_hash,
            internal_edge_count=cluster.internal_edge_count,
            external_edge_count=cluster.external_edge_count,
            member_count=cluster.member_count,
            suspicion_ratio=cluster.suspicion_ratio,
            status=cluster.status.value,
            reviewed_by=cluster.reviewed_by,
            reviewed_at=cluster.reviewed_at,
            detected_at=cluster.detected_at,
            updated_at=cluster.updated_at,
        )


class ClusterMemberOut(BaseModel):
    did: str
    role_in_cluster: str
    joined_at: datetime
    handle: str | None = None
    display_name: str | None = None

    @classmethod
    def from_domain(cls, member: ClusterMember) -> "ClusterMemberOut":
        return cls(
            did=member.did,
            role_in_cluster=member.role_in_cluster.value,
            joined_at=member.joined_at,
            handle=member.handle,
            display_name=member.display_name,
        )


class ClusterDetailOut(SybilClusterOut):
    members: list[ClusterMemberOut]

    @classmethod
    def from_detail(cls, detail: ClusterDetail) -> "ClusterDetailOut":
        base = SybilClusterOut.from_domain(detail.cluster)
        return cls(**base.model_dump(), members=[ClusterMemberOut.from_domain(member) for member in detail.members])


class ClusterStatusIn(BaseModel):
    status: ClusterStatus


class ClusterStatusOut(BaseModel):
    cluster: SybilClusterOut
    banned_dids: list[str]
    failed_dids: list[str]

    @classmethod
    def from_domain(cls, report: BanPropagationReport) -> "ClusterStatusOut":
        return cls(
            cluster=SybilClusterOut.from_domain(report.cluster),
            banned_dids=list(report.banned),
            failed_dids=list(report.failed),
        )


def get_registry_dep() -> SybilClusterRegistry:
    return get_sybil_registry()


@router.get("", response_model=PageOut[SybilClusterOut])
async def list_clusters(
    *,
    status: ClusterStatus | None = Query(default=None),
    sort: ClusterSort = Query(default=ClusterSort.DETECTED_AT),
    cursor: str | None = Query(default=None),
    limit: int | None = Query(default=None),
    _: AccountRecord = Depends(get_staff_actor),
    registry: SybilClusterRegistry = Depends(get_registry_dep),
) -> PageOut[SybilClusterOut]:
    try:
        page = await registry.list_clusters(status=status, sort=sort, cursor=cursor, limit=limit)
    except ModerationWorkflowError as exc:
        raise to_http_error(exc) from exc
    return PageOut[SybilClusterOut](items=[SybilClusterOut.from_domain(item) for item in page.items], cursor=page.cursor)


@router.get("/{cluster_id}", response_model=ClusterDetailOut)
async def get_cluster(
    cluster_id: int,
    _: AccountRecord = Depends(get_staff_actor),
    registry: SybilClusterRegistry = Depends(get_registry_dep),
) -> ClusterDetailOut:
    try:
        detail = await registry.get_cluster(cluster_id)
    except ModerationWorkflowError as exc:
        raise to_http_error(exc) from exc
    return ClusterDetailOut.from_detail(detail)


@router.put("/{cluster_id}/status", response_model=ClusterStatusOut)
async def update_cluster_status(
    cluster_id: int,
    body: ClusterStatusIn,
    actor: AccountRecord = Depends(get_staff_actor),
    registry: SybilClusterRegistry = Depends(get_registry_dep),
) -> ClusterStatusOut:
    try:
        report = await registry.update_status(cluster_id, body.status, actor.did)
    except ModerationWorkflowError as exc:
        raise to_http_error(exc) from exc
    return ClusterStatusOut.from_domain(report)
