"""PostgreSQL-backed account trust and trust seed storage."""

from __future__ import annotations

from datetime import datetime
from typing import Any

import asyncpg

from trustlayer.moderation.domain.errors import TrustSeedConflictError
from trustlayer.moderation.domain.pagination import Page, build_keyset_predicate, decode_cursor, finish_page
from trustlayer.moderation.domain.scope import Scope, scope_from_storage
from trustlayer.moderation.domain.trust import AccountTrust, TrustRepository, TrustSeed, TrustSeedRepository

# $1 did, $2 community, $3 trusted threshold, $4 approval time.
# Promotion is sticky: trusted_at is only written on the false -> true flip.
TRUST_APPROVAL_UPSERT = """
INSERT INTO account_trust AS t (did, community_did, approved_post_count, is_trusted, trusted_at, updated_at)
VALUES ($1, $2, 1, 1 >= $3, CASE WHEN 1 >= $3 THEN $4::timestamptz END, $4)
ON CONFLICT (did, community_did) DO UPDATE SET
    approved_post_count = t.approved_post_count + 1,
    is_trusted = t.is_trusted OR t.approved_post_count + 1 >= $3,
    trusted_at = CASE
        WHEN t.is_trusted THEN t.trusted_at
        WHEN t.approved_post_count + 1 >= $3 THEN $4::timestamptz
        ELSE t.trusted_at
    END,
    updated_at = $4
RETURNING did, community_did, approved_post_count, is_trusted, trusted_at, updated_at
"""


def row_to_trust(row: asyncpg.Record) -> AccountTrust:
    return AccountTrust(
        did=str(row["did"]),
        community_did=str(row["community_did"]),
        approved_post_count=int(row["approved_post_count"]),
        is_trusted=bool(row["is_trusted"]),
        trusted_at=row["trusted_at"],
        updated_at=row["updated_at"],
    )


def _row_to_seed(row: asyncpg.Record) -> TrustSeed:
    return TrustSeed(
        id=int(row["id"]),
        did=str(row["did"]),
        scope=scope_from_storage(row["community_id"]),
        added_by=str(row["added_by"]),
        reason=row["reason"],
        created_at=row["created_at"],
        handle=row.get("handle"),
        display_name=row.get("display_name"),
    )


class PostgresTrustRepository(TrustRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get(self, did: str, community_did: str) -> AccountTrust | None:
        row = await self._pool.fetchrow(
            """
            SELECT did, community_did, approved_post_count, is_trusted, trusted_at, updated_at
            FROM account_trust
            WHERE did = $1 AND community_did = $2
            """,
            did,
            community_did,
        )
        return row_to_trust(row) if row else None


class PostgresTrustSeedRepository(TrustSeedRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def list_explicit(self, *, cursor: str | None, limit: int) -> Page[TrustSeed]:
        params: list[Any] = []
        where = ""
        if cursor:
            where = "WHERE " + build_keyset_predicate(
                sort_column="s.created_at",
                order="desc",
                cursor=decode_cursor(cursor),
                params=params,
                id_column="s.id",
            )
        params.append(limit + 1)
        rows = await self._pool.fetch(
            f"""
            SELECT s.id, s.did, s.community_id, s.added_by, s.reason, s.created_at, u.handle, u.display_name
            FROM trust_seeds s
            LEFT JOIN users u ON u.did = s.did
            {where}
            ORDER BY s.created_at DESC, s.id DESC
            LIMIT ${len(params)}
            """,
            *params,
        )
        seeds = [_row_to_seed(row) for row in rows]
        return finish_page(seeds, limit, sort_field="created_at", key=lambda seed: (seed.created_at, seed.id))

    async def seeded_dids(self) -> set[str]:
        rows = await self._pool.fetch("SELECT DISTINCT did FROM trust_seeds")
        return {str(row["did"]) for row in rows}

    async def create(self, *, did: str, scope: Scope, added_by: str, reason: str | None, created_at: datetime) -> TrustSeed:
        try:
            row = await self._pool.fetchrow(
                """
                INSERT INTO trust_seeds (did, community_id, added_by, reason, created_at)
                VALUES ($1, $2, $3, $4, $5)
                RETURNING id, did, community_id, added_by, reason, created_at
                """,
                did,
                scope.storage_key(),
                added_by,
                reason,
                created_at,
            )
        except asyncpg.UniqueViolationError as exc:
            raise TrustSeedConflictError(did) from exc
        if row is None:  # pragma: no cover - asyncpg always returns a row for RETURNING
            raise RuntimeError("Failed to insert trust_seeds row")
        return _row_to_seed(row)

    async def delete(self, seed_id: int) -> bool:
        row = await self._pool.fetchrow("DELETE FROM trust_seeds WHERE id = $1 RETURNING id", seed_id)
        return row is not None

    async def has_seed(self, did: str, scope: Scope) -> bool:
        row = await self._pool.fetchrow(
            "SELECT 1 FROM trust_seeds WHERE did = $1 AND community_id IN ($2, '') LIMIT 1",
            did,
            scope.storage_key(),
        )
        return row is not None
