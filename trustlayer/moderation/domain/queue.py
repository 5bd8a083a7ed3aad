"""Moderation queue for held submissions."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Protocol, Sequence

from trustlayer.moderation.domain.errors import QueueItemConflictError, QueueItemNotFoundError
from trustlayer.moderation.domain.pagination import Page, clamp_limit, paginate_desc
from trustlayer.moderation.domain.settings_store import SettingsStore
from trustlayer.moderation.domain.trust import AccountTrust, InMemoryTrustRepository
from trustlayer.obs import metrics

logger = logging.getLogger(__name__)


class QueueReason(str, Enum):
    WORD_FILTER = "word_filter"
    FIRST_POST = "first_post"
    LINK_HOLD = "link_hold"
    BURST = "burst"
    TOPIC_DELAY = "topic_delay"


class ContentType(str, Enum):
    TOPIC = "topic"
    REPLY = "reply"


class QueueStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass(slots=True)
class QueueItem:
    id: int
    content_uri: str
    content_type: ContentType
    author_did: str
    community_did: str
    queue_reason: QueueReason
    created_at: datetime
    matched_words: list[str] | None = None
    status: QueueStatus = QueueStatus.PENDING
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None


@dataclass(slots=True)
class ApprovalOutcome:
    item: QueueItem
    trust: AccountTrust
    promoted: bool = False
    resolved_sibling_ids: list[int] = field(default_factory=list)


class QueueRepository(Protocol):
    async def enqueue(
        self,
        *,
        content_uri: str,
        content_type: ContentType,
        author_did: str,
        community_did: str,
        reason: QueueReason,
        matched_words: Optional[list[str]],
        created_at: datetime,
    ) -> QueueItem:
        ...

    async def get(self, item_id: int) -> QueueItem | None:
        ...

    async def list_items(
        self,
        community_did: str,
        *,
        status: QueueStatus,
        reason: QueueReason | None,
        cursor: str | None,
        limit: int,
    ) -> Page[QueueItem]:
        ...

    async def approve(self, item_id: int, *, reviewer_did: str, reviewed_at: datetime, trusted_threshold: int) -> ApprovalOutcome:
        """Resolve the item, its pending siblings, the content row and the author's trust atomically."""

    async def reject(self, item_id: int, *, reviewer_did: str, reviewed_at: datetime) -> QueueItem:
        ...


class ModerationQueue:
    """State machine over held items: pending -> approved | rejected."""

    def __init__(self, repository: QueueRepository, settings_store: SettingsStore) -> None:
        self._repo = repository
        self._settings = settings_store

    async def enqueue(
        self,
        *,
        content_uri: str,
        content_type: ContentType,
        author_did: str,
        community_did: str,
        reason: QueueReason,
        matched_words: Optional[list[str]] = None,
    ) -> QueueItem:
        item = await self._repo.enqueue(
            content_uri=content_uri,
            content_type=content_type,
            author_did=author_did,
            community_did=community_did,
            reason=reason,
            matched_words=matched_words,
            created_at=datetime.now(timezone.utc),
        )
        metrics.QUEUE_ENQUEUED.labels(reason=reason.value).inc()
        return item

    async def list_items(
        self,
        community_did: str,
        *,
        status: QueueStatus = QueueStatus.PENDING,
        reason: QueueReason | None = None,
        cursor: str | None = None,
        limit: int | None = None,
    ) -> Page[QueueItem]:
        return await self._repo.list_items(
            community_did,
            status=status,
            reason=reason,
            cursor=cursor,
            limit=clamp_limit(limit),
        )

    async def approve(self, item_id: int, reviewer_did: str) -> ApprovalOutcome:
        item = await self._pending_item(item_id)
        settings = await self._settings.load(item.community_did)
        outcome = await self._repo.approve(
            item_id,
            reviewer_did=reviewer_did,
            reviewed_at=datetime.now(timezone.utc),
            trusted_threshold=settings.trusted_post_threshold,
        )
        metrics.QUEUE_TRANSITIONS.labels(action="approve").inc()
        if outcome.promoted:
            metrics.TRUST_PROMOTIONS.inc()
            logger.info(
                "account_trust_promoted",
                extra={"did": item.author_did, "community_did": item.community_did},
            )
        logger.info(
            "queue_item_approved",
            extra={
                "item_id": item_id,
                "reviewer_did": reviewer_did,
                "siblings": outcome.resolved_sibling_ids,
            },
        )
        return outcome

    async def reject(self, item_id: int, reviewer_did: str) -> QueueItem:
        await self._pending_item(item_id)
        rejected = await self._repo.reject(item_id, reviewer_did=reviewer_did, reviewed_at=datetime.now(timezone.utc))
        metrics.QUEUE_TRANSITIONS.labels(action="reject").inc()
        logger.info("queue_item_rejected", extra={"item_id": item_id, "reviewer_did": reviewer_did})
        return rejected

    async def _pending_item(self, item_id: int) -> QueueItem:
        item = await self._repo.get(item_id)
        if item is None:
            raise QueueItemNotFoundError(str(item_id))
        if item.status is not QueueStatus.PENDING:
            raise QueueItemConflictError(f"queue item {item_id} already {item.status.value}")
        return item


class InMemoryQueueRepository(QueueRepository):
    """Keeps queue rows, content visibility and trust in process memory."""

    def __init__(self, trust: InMemoryTrustRepository | None = None) -> None:
        self.items: dict[int, QueueItem] = {}
        self.content_status: dict[str, str] = {}
        self.trust = trust or InMemoryTrustRepository()
        self._next_id = 1

    async def enqueue(
        self,
        *,
        content_uri: str,
        content_type: ContentType,
        author_did: str,
        community_did: str,
        reason: QueueReason,
        matched_words: Optional[list[str]],
        created_at: datetime,
    ) -> QueueItem:
        item = QueueItem(
            id=self._next_id,
            content_uri=content_uri,
            content_type=content_type,
            author_did=author_did,
            community_did=community_did,
            queue_reason=reason,
            matched_words=list(matched_words) if matched_words else None,
            created_at=created_at,
        )
        self.items[item.id] = item
        self.content_status.setdefault(content_uri, "pending")
        self._next_id += 1
        return item

    async def get(self, item_id: int) -> QueueItem | None:
        return self.items.get(item_id)

    async def list_items(
        self,
        community_did: str,
        *,
        status: QueueStatus,
        reason: QueueReason | None,
        cursor: str | None,
        limit: int,
    ) -> Page[QueueItem]:
        rows: Sequence[QueueItem] = [
            item
            for item in self.items.values()
            if item.community_did == community_did
            and item.status is status
            and (reason is None or item.queue_reason is reason)
        ]
        return paginate_desc(rows, limit=limit, cursor=cursor, sort_field="created_at", key=lambda item: (item.created_at, item.id))

    async def approve(self, item_id: int, *, reviewer_did: str, reviewed_at: datetime, trusted_threshold: int) -> ApprovalOutcome:
        item = self._claim(item_id, QueueStatus.APPROVED, reviewer_did, reviewed_at)
        siblings: list[int] = []
        for other in list(self.items.values()):
            if other.id != item.id and other.content_uri == item.content_uri and other.status is QueueStatus.PENDING:
                self.items[other.id] = replace(
                    other,
                    status=QueueStatus.APPROVED,
                    reviewed_by=reviewer_did,
                    reviewed_at=reviewed_at,
                )
                siblings.append(other.id)
        self.content_status[item.content_uri] = "approved"
        trust, promoted = self.trust.record_approval(
            item.author_did,
            item.community_did,
            threshold=trusted_threshold,
            now=reviewed_at,
        )
        return ApprovalOutcome(item=item, trust=trust, promoted=promoted, resolved_sibling_ids=siblings)

    async def reject(self, item_id: int, *, reviewer_did: str, reviewed_at: datetime) -> QueueItem:
        item = self._claim(item_id, QueueStatus.REJECTED, reviewer_did, reviewed_at)
        self.content_status[item.content_uri] = "rejected"
        return item

    def _claim(self, item_id: int, status: QueueStatus, reviewer_did: str, reviewed_at: datetime) -> QueueItem:
        current = self.items.get(item_id)
        if current is None:
            raise QueueItemNotFoundError(str(item_id))
        if current.status is not QueueStatus.PENDING:
            raise QueueItemConflictError(f"queue item {item_id} already {current.status.value}")
        updated = replace(current, status=status, reviewed_by=reviewer_did, reviewed_at=reviewed_at)
        self.items[item_id] = updated
        return updated
