"""Activity aggregates and behavioral flag storage for the heuristics engine."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Sequence

import asyncpg

from trustlayer.moderation.domain.heuristics import (
    ActivitySource,
    AuthorReactionCount,
    BehavioralFlag,
    FlagRepository,
    FlagStatus,
    FlagType,
    InteractionDiversity,
    PostSample,
)
from trustlayer.moderation.domain.pagination import Page, build_keyset_predicate, decode_cursor, finish_page

_FLAG_COLUMNS = "id, flag_type, affected_dids, details, community_did, status, detected_at"


def _row_to_flag(row: asyncpg.Record) -> BehavioralFlag:
    return BehavioralFlag(
        id=int(row["id"]),
        flag_type=FlagType(row["flag_type"]),
        affected_dids=[str(did) for did in (row["affected_dids"] or [])],
        details=str(row["details"]),
        community_did=row["community_did"],
        status=FlagStatus(row["status"]),
        detected_at=row["detected_at"],
    )


class PostgresActivitySource(ActivitySource):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def reaction_counts(self, since: datetime, community_did: str | None) -> Sequence[AuthorReactionCount]:
        rows = await self._pool.fetch(
            """
            SELECT author_did, count(*) AS reaction_count
            FROM reactions
            WHERE created_at >= $1 AND ($2::text IS NULL OR community_did = $2)
            GROUP BY author_did
            """,
            since,
            community_did,
        )
        return [AuthorReactionCount(author_did=row["author_did"], count=int(row["reaction_count"])) for row in rows]

    async def recent_posts(self, since: datetime, community_did: str | None) -> Sequence[PostSample]:
        rows = await self._pool.fetch(
            """
            SELECT uri, author_did, title || ' ' || content AS body
            FROM topics
            WHERE created_at >= $1 AND ($2::text IS NULL OR community_did = $2)
            UNION ALL
            SELECT uri, author_did, content AS body
            FROM replies
            WHERE created_at >= $1 AND ($2::text IS NULL OR community_did = $2)
            """,
            since,
            community_did,
        )
        return [PostSample(uri=row["uri"], author_did=row["author_did"], content=row["body"] or "") for row in rows]

    async def interaction_diversity(self, since: datetime, community_did: str | None) -> Sequence[InteractionDiversity]:
        rows = await self._pool.fetch(
            """
            SELECT source_did, sum(weight) AS total_interactions, count(DISTINCT target_did) AS distinct_targets
            FROM interaction_graph
            WHERE last_interaction_at >= $1 AND ($2::text IS NULL OR community_id = $2)
            GROUP BY source_did
            """,
            since,
            community_did,
        )
        return [
            InteractionDiversity(
                source_did=row["source_did"],
                total_interactions=int(row["total_interactions"]),
                distinct_targets=int(row["distinct_targets"]),
            )
            for row in rows
        ]


class PostgresFlagRepository(FlagRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def insert(self, flag: BehavioralFlag) -> BehavioralFlag:
        row = await self._pool.fetchrow(
            f"""
            INSERT INTO behavioral_flags (flag_type, affected_dids, details, community_did, status, detected_at)
            VALUES ($1, $2, $3, $4, $5, $6)
            RETURNING {_FLAG_COLUMNS}
            """,
            flag.flag_type.value,
            list(flag.affected_dids),
            flag.details,
            flag.community_did,
            flag.status.value,
            flag.detected_at,
        )
        if row is None:  # pragma: no cover - asyncpg always returns a row for RETURNING
            raise RuntimeError("Failed to insert behavioral_flags row")
        return _row_to_flag(row)

    async def get(self, flag_id: int) -> BehavioralFlag | None:
        row = await self._pool.fetchrow(f"SELECT {_FLAG_COLUMNS} FROM behavioral_flags WHERE id = $1", flag_id)
        return _row_to_flag(row) if row else None

    async def list_flags(
        self,
        *,
        flag_type: FlagType | None,
        status: FlagStatus | None,
        cursor: str | None,
        limit: int,
    ) -> Page[BehavioralFlag]:
        params: list[Any] = []
        clauses: list[str] = []
        if flag_type is not None:
            params.append(flag_type.value)
            clauses.append(f"flag_type = ${len(params)}")
        if status is not None:
            params.append(status.value)
            clauses.append(f"status = ${len(params)}")
        if cursor:
            clauses.append(
                build_keyset_predicate(sort_column="detected_at", order="desc", cursor=decode_cursor(cursor), params=params)
            )
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit + 1)
        rows = await self._pool.fetch(
            f"""
            SELECT {_FLAG_COLUMNS}
            FROM behavioral_flags
            {where}
            ORDER BY detected_at DESC, id DESC
            LIMIT ${len(params)}
            """,
            *params,
        )
        flags = [_row_to_flag(row) for row in rows]
        return finish_page(flags, limit, sort_field="detected_at", key=lambda flag: (flag.detected_at, flag.id or 0))

    async def update_status(self, flag_id: int, status: FlagStatus) -> BehavioralFlag | None:
        row = await self._pool.fetchrow(
            f"UPDATE behavioral_flags SET status = $2 WHERE id = $1 RETURNING {_FLAG_COLUMNS}",
            flag_id,
            status.value,
        )
        return _row_to_flag(row) if row else None
