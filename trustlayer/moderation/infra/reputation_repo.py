"""PostgreSQL reads behind reputation scoring, plus PDS trust factors and graph totals."""

from __future__ import annotations

from datetime import datetime
from typing import Any

import asyncpg

from trustlayer.moderation.domain.pagination import Page, build_keyset_predicate, decode_cursor, finish_page
from trustlayer.moderation.domain.reputation import (
    ContentCounts,
    ContentStats,
    PdsTrustFactor,
    PdsTrustFactorRepository,
)
from trustlayer.moderation.domain.trust_graph import GraphStats

_PDS_COLUMNS = "id, pds_host, trust_factor, is_default, updated_at"


def _row_to_factor(row: asyncpg.Record) -> PdsTrustFactor:
    return PdsTrustFactor(
        id=int(row["id"]),
        pds_host=str(row["pds_host"]),
        trust_factor=float(row["trust_factor"]),
        is_default=bool(row["is_default"]),
        updated_at=row["updated_at"],
    )


class PostgresContentStats(ContentStats):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def content_counts(self, did: str) -> ContentCounts:
        row = await self._pool.fetchrow(
            """
            WITH authored AS (
                SELECT uri, community_did, 'topic' AS kind FROM topics
                WHERE author_did = $1 AND moderation_status = 'approved'
                UNION ALL
                SELECT uri, community_did, 'reply' AS kind FROM replies
                WHERE author_did = $1 AND moderation_status = 'approved'
            )
            SELECT
                count(*) FILTER (WHERE kind = 'topic') AS topic_count,
                count(*) FILTER (WHERE kind = 'reply') AS reply_count,
                (SELECT count(*) FROM reactions r JOIN authored a ON a.uri = r.subject_uri) AS reactions_received,
                count(DISTINCT community_did) AS community_count
            FROM authored
            """,
            did,
        )
        if row is None:
            return ContentCounts()
        return ContentCounts(
            topics=int(row["topic_count"] or 0),
            replies=int(row["reply_count"] or 0),
            reactions_received=int(row["reactions_received"] or 0),
            community_count=int(row["community_count"] or 0),
        )

    async def interaction_targets(self, did: str) -> set[str]:
        rows = await self._pool.fetch("SELECT DISTINCT target_did FROM interaction_graph WHERE source_did = $1", did)
        return {str(row["target_did"]) for row in rows}


class PostgresPdsTrustFactorRepository(PdsTrustFactorRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get(self, pds_host: str) -> PdsTrustFactor | None:
        row = await self._pool.fetchrow(f"SELECT {_PDS_COLUMNS} FROM pds_trust_factors WHERE pds_host = $1", pds_host)
        return _row_to_factor(row) if row else None

    async def list_factors(self, *, cursor: str | None, limit: int) -> Page[PdsTrustFactor]:
        params: list[Any] = []
        where = ""
        if cursor:
            where = "WHERE " + build_keyset_predicate(
                sort_column="updated_at", order="desc", cursor=decode_cursor(cursor), params=params
            )
        params.append(limit + 1)
        rows = await self._pool.fetch(
            f"""
            SELECT {_PDS_COLUMNS}
            FROM pds_trust_factors
            {where}
            ORDER BY updated_at DESC, id DESC
            LIMIT ${len(params)}
            """,
            *params,
        )
        factors = [_row_to_factor(row) for row in rows]
        return finish_page(factors, limit, sort_field="updated_at", key=lambda factor: (factor.updated_at, factor.id))

    async def upsert(self, pds_host: str, trust_factor: float, *, updated_at: datetime) -> PdsTrustFactor:
        row = await self._pool.fetchrow(
            f"""
            INSERT INTO pds_trust_factors (pds_host, trust_factor, is_default, updated_at)
            VALUES ($1, $2, FALSE, $3)
            ON CONFLICT (pds_host) DO UPDATE SET
                trust_factor = EXCLUDED.trust_factor,
                is_default = FALSE,
                updated_at = EXCLUDED.updated_at
            RETURNING {_PDS_COLUMNS}
            """,
            pds_host,
            trust_factor,
            updated_at,
        )
        if row is None:  # pragma: no cover - asyncpg always returns a row for RETURNING
            raise RuntimeError("Failed to upsert pds_trust_factors row")
        return _row_to_factor(row)


class PostgresGraphStats(GraphStats):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def count_nodes(self) -> int:
        value = await self._pool.fetchval("SELECT count(DISTINCT did) FROM trust_scores")
        return int(value or 0)

    async def count_edges(self) -> int:
        value = await self._pool.fetchval("SELECT count(*) FROM interaction_graph")
        return int(value or 0)
