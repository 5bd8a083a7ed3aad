"""Moderation queue endpoints for staff reviewers."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from trustlayer.moderation.api.deps import PageOut, get_staff_actor, to_http_error
from trustlayer.moderation.domain.accounts import AccountRecord
from trustlayer.moderation.domain.container import get_queue
from trustlayer.moderation.domain.errors import ModerationWorkflowError
from trustlayer.moderation.domain.queue import ApprovalOutcome, ModerationQueue, QueueItem, QueueReason, QueueStatus
from trustlayer.moderation.domain.trust import AccountTrust

router = APIRouter(prefix="/api/mod/v1/queue", tags=["moderation-queue"])


class QueueItemOut(BaseModel):
    id: int
    content_uri: str
    content_type: str
    author_did: str
    community_did: str
    queue_reason: str
    matched_words: list[str] | None
    status: str
    reviewed_by: str | None
    reviewed_at: datetime | None
    created_at: datetime

    @classmethod
    def from_domain(cls, item: QueueItem) -> "QueueItemOut":
        return cls(
            id=item.id,
            content_uri=item.content_uri,
            content_type=item.content_type.value,
            author_did=item.author_did,
            community_did=item.community_did,
            queue_reason=item.queue_reason.value,
            matched_words=list(item.matched_words) if item.matched_words else None,
            status=item.status.value,
            reviewed_by=item.reviewed_by,
            reviewed_at=item.reviewed_at,
            created_at=item.created_at,
        )


class AccountTrustOut(BaseModel):
    did: str
    community_did: str
    approved_post_count: int
    is_trusted: bool
    trusted_at: datetime | None

    @classmethod
    def from_domain(cls, trust: AccountTrust) -> "AccountTrustOut":
        return cls(
            did=trust.did,
            community_did=trust.community_did,
            approved_post_count=trust.approved_post_count,
            is_trusted=trust.is_trusted,
            trusted_at=trust.trusted_at,
        )


class ApprovalOut(BaseModel):
    item: QueueItemOut
    trust: AccountTrustOut
    promoted: bool
    resolved_sibling_ids: list[int]

    @classmethod
    def from_domain(cls, outcome: ApprovalOutcome) -> "ApprovalOut":
        return cls(
            item=QueueItemOut.from_domain(outcome.item),
            trust=AccountTrustOut.from_domain(outcome.trust),
            promoted=outcome.promoted,
            resolved_sibling_ids=list(outcome.resolved_sibling_ids),
        )


def get_queue_dep() -> ModerationQueue:
    return get_queue()


@router.get("", response_model=PageOut[QueueItemOut])
async def list_queue(
    *,
    community: str = Query(..., min_length=1),
    status: QueueStatus = Query(default=QueueStatus.PENDING),
    reason: QueueReason | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int | None = Query(default=None),
    _: AccountRecord = Depends(get_staff_actor),
    queue: ModerationQueue = Depends(get_queue_dep),
) -> PageOut[QueueItemOut]:
    try:
        page = await queue.list_items(community, status=status, reason=reason, cursor=cursor, limit=limit)
    except ModerationWorkflowError as exc:
        raise to_http_error(exc) from exc
    return PageOut[QueueItemOut](items=[QueueItemOut.from_domain(item) for item in page.items], cursor=page.cursor)


@router.post("/{item_id}/approve", response_model=ApprovalOut)
async def approve_item(
    item_id: int,
    actor: AccountRecord = Depends(get_staff_actor),
    queue: ModerationQueue = Depends(get_queue_dep),
) -> ApprovalOut:
    try:
        outcome = await queue.approve(item_id, actor.did)
    except ModerationWorkflowError as exc:
        raise to_http_error(exc) from exc
    return ApprovalOut.from_domain(outcome)


@router.post("/{item_id}/reject", response_model=QueueItemOut)
async def reject_item(
    item_id: int,
    actor: AccountRecord = Depends(get_staff_actor),
    queue: ModerationQueue = Depends(get_queue_dep),
) -> QueueItemOut:
    try:
        item = await queue.reject(item_id, actor.did)
    except ModerationWorkflowError as exc:
        raise to_http_error(exc) from exc
    return QueueItemOut.from_domain(item)
