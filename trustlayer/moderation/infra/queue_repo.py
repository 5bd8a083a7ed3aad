"""PostgreSQL-backed moderation queue with transactional review."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import asyncpg

from trustlayer.moderation.domain.errors import QueueItemConflictError, QueueItemNotFoundError
from trustlayer.moderation.domain.pagination import Page, build_keyset_predicate, decode_cursor, finish_page
from trustlayer.moderation.domain.queue import (
    ApprovalOutcome,
    ContentType,
    QueueItem,
    QueueReason,
    QueueRepository,
    QueueStatus,
)
from trustlayer.moderation.infra.trust_repo import TRUST_APPROVAL_UPSERT, row_to_trust

_COLUMNS = """
    id, content_uri, content_type, author_did, community_did, queue_reason,
    matched_words, status, reviewed_by, reviewed_at, created_at
"""

_CONTENT_STATUS_SQL = {
    ContentType.TOPIC: "UPDATE topics SET moderation_status = $2 WHERE uri = $1",
    ContentType.REPLY: "UPDATE replies SET moderation_status = $2 WHERE uri = $1",
}


def _row_to_item(row: asyncpg.Record) -> QueueItem:
    matched = row["matched_words"]
    return QueueItem(
        id=int(row["id"]),
        content_uri=str(row["content_uri"]),
        content_type=ContentType(row["content_type"]),
        author_did=str(row["author_did"]),
        community_did=str(row["community_did"]),
        queue_reason=QueueReason(row["queue_reason"]),
        matched_words=list(matched) if matched else None,
        status=QueueStatus(row["status"]),
        reviewed_by=row["reviewed_by"],
        reviewed_at=row["reviewed_at"],
        created_at=row["created_at"],
    )


class PostgresQueueRepository(QueueRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

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
        row = await self._pool.fetchrow(
            f"""
            INSERT INTO moderation_queue (content_uri, content_type, author_did, community_did, queue_reason, matched_words, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            RETURNING {_COLUMNS}
            """,
            content_uri,
            content_type.value,
            author_did,
            community_did,
            reason.value,
            list(matched_words) if matched_words else None,
            created_at,
        )
        if row is None:  # pragma: no cover - asyncpg always returns a row for RETURNING
            raise RuntimeError("Failed to insert moderation_queue row")
        return _row_to_item(row)

    async def get(self, item_id: int) -> QueueItem | None:
        row = await self._pool.fetchrow(f"SELECT {_COLUMNS} FROM moderation_queue WHERE id = $1", item_id)
        return _row_to_item(row) if row else None

    async def list_items(
        self,
        community_did: str,
        *,
        status: QueueStatus,
        reason: QueueReason | None,
        cursor: str | None,
        limit: int,
    ) -> Page[QueueItem]:
        params: list[Any] = [community_did, status.value]
        clauses = ["community_did = $1", "status = $2"]
        if reason is not None:
            params.append(reason.value)
            clauses.append(f"queue_reason = ${len(params)}")
        if cursor:
            clauses.append(
                build_keyset_predicate(sort_column="created_at", order="desc", cursor=decode_cursor(cursor), params=params)
            )
        params.append(limit + 1)
        rows = await self._pool.fetch(
            f"""
            SELECT {_COLUMNS}
            FROM moderation_queue
            WHERE {" AND ".join(clauses)}
            ORDER BY created_at DESC, id DESC
            LIMIT ${len(params)}
            """,
            *params,
        )
        items = [_row_to_item(row) for row in rows]
        return finish_page(items, limit, sort_field="created_at", key=lambda item: (item.created_at, item.id))

    async def approve(self, item_id: int, *, reviewer_did: str, reviewed_at: datetime, trusted_threshold: int) -> ApprovalOutcome:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                item = await self._claim(conn, item_id, QueueStatus.APPROVED, reviewer_did, reviewed_at)
                await conn.execute(_CONTENT_STATUS_SQL[item.content_type], item.content_uri, "approved")
                sibling_rows = await conn.fetch(
                    """
                    UPDATE moderation_queue
                    SET status = 'approved', reviewed_by = $2, reviewed_at = $3
                    WHERE content_uri = $1 AND status = 'pending' AND id <> $4
                    RETURNING id
                    """,
                    item.content_uri,
                    reviewer_did,
                    reviewed_at,
                    item.id,
                )
                trust_row = await conn.fetchrow(
                    TRUST_APPROVAL_UPSERT,
                    item.author_did,
                    item.community_did,
                    trusted_threshold,
                    reviewed_at,
                )
        if trust_row is None:  # pragma: no cover - asyncpg always returns a row for RETURNING
            raise RuntimeError("Failed to upsert account_trust")
        trust = row_to_trust(trust_row)
        return ApprovalOutcome(
            item=item,
            trust=trust,
            promoted=trust.is_trusted and trust.trusted_at == reviewed_at,
            resolved_sibling_ids=[int(row["id"]) for row in sibling_rows],
        )

    async def reject(self, item_id: int, *, reviewer_did: str, reviewed_at: datetime) -> QueueItem:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                item = await self._claim(conn, item_id, QueueStatus.REJECTED, reviewer_did, reviewed_at)
                await conn.execute(_CONTENT_STATUS_SQL[item.content_type], item.content_uri, "rejected")
        return item

    async def _claim(
        self,
        conn: asyncpg.Connection,
        item_id: int,
        status: QueueStatus,
        reviewer_did: str,
        reviewed_at: datetime,
    ) -> QueueItem:
        row = await conn.fetchrow(
            f"""
            UPDATE moderation_queue
            SET status = $2, reviewed_by = $3, reviewed_at = $4
            WHERE id = $1 AND status = 'pending'
            RETURNING {_COLUMNS}
            """,
            item_id,
            status.value,
            reviewer_did,
            reviewed_at,
        )
        if row is not None:
            return _row_to_item(row)
        exists = await conn.fetchval("SELECT status FROM moderation_queue WHERE id = $1", item_id)
        if exists is None:
            raise QueueItemNotFoundError(str(item_id))
        raise QueueItemConflictError(f"queue item {item_id} already {exists}")
