"""PostgreSQL-backed sybil cluster registry and low-trust subgraph reads."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Sequence

import asyncpg

from trustlayer.moderation.domain.pagination import Page, build_keyset_predicate, decode_cursor, finish_page
from trustlayer.moderation.domain.sybil import (
    ClusterMember,
    ClusterSort,
    ClusterStatus,
    DetectedCluster,
    MemberRole,
    SybilCluster,
    SybilClusterRepository,
    SybilGraphSource,
)

_COLUMNS = """
    id, cluster_hash, internal_edge_count, external_edge_count, member_count,
    status, reviewed_by, reviewed_at, detected_at, updated_at
"""

# suspicion_ratio is derived, never stored.
_SORT_EXPRESSIONS = {
    ClusterSort.DETECTED_AT: "detected_at",
    ClusterSort.MEMBER_COUNT: "member_count",
    ClusterSort.SUSPICION_RATIO: (
        "(CASE WHEN internal_edge_count + external_edge_count = 0 THEN 0::float8 "
        "ELSE internal_edge_count::float8 / (internal_edge_count + external_edge_count) END)"
    ),
}


def _row_to_cluster(row: asyncpg.Record) -> SybilCluster:
    return SybilCluster(
        id=int(row["id"]),
        cluster_hash=str(row["cluster_hash"]),
        internal_edge_count=int(row["internal_edge_count"]),
        external_edge_count=int(row["external_edge_count"]),
        member_count=int(row["member_count"]),
        status=ClusterStatus(row["status"]),
        reviewed_by=row["reviewed_by"],
        reviewed_at=row["reviewed_at"],
        detected_at=row["detected_at"],
        updated_at=row["updated_at"],
    )


class PostgresSybilClusterRepository(SybilClusterRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get(self, cluster_id: int) -> SybilCluster | None:
        row = await self._pool.fetchrow(f"SELECT {_COLUMNS} FROM sybil_clusters WHERE id = $1", cluster_id)
        return _row_to_cluster(row) if row else None

    async def list_members(self, cluster_id: int) -> Sequence[ClusterMember]:
        rows = await self._pool.fetch(
            """
            SELECT m.cluster_id, m.did, m.role_in_cluster, m.joined_at, u.handle, u.display_name
            FROM sybil_cluster_members m
            LEFT JOIN users u ON u.did = m.did
            WHERE m.cluster_id = $1
            ORDER BY m.role_in_cluster, m.did
            """,
            cluster_id,
        )
        return [
            ClusterMember(
                cluster_id=int(row["cluster_id"]),
                did=str(row["did"]),
                role_in_cluster=MemberRole(row["role_in_cluster"]),
                joined_at=row["joined_at"],
                handle=row["handle"],
                display_name=row["display_name"],
            )
            for row in rows
        ]

    async def list_clusters(
        self,
        *,
        status: ClusterStatus | None,
        sort: ClusterSort,
        cursor: str | None,
        limit: int,
    ) -> Page[SybilCluster]:
        sort_expr = _SORT_EXPRESSIONS[sort]
        params: list[Any] = []
        clauses: list[str] = []
        if status is not None:
            params.append(status.value)
            clauses.append(f"status = ${len(params)}")
        if cursor:
            clauses.append(
                build_keyset_predicate(sort_column=sort_expr, order="desc", cursor=decode_cursor(cursor), params=params)
            )
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit + 1)
        rows = await self._pool.fetch(
            f"""
            SELECT {_COLUMNS}
            FROM sybil_clusters
            {where}
            ORDER BY {sort_expr} DESC, id DESC
            LIMIT ${len(params)}
            """,
            *params,
        )
        clusters = [_row_to_cluster(row) for row in rows]
        return finish_page(clusters, limit, sort_field=sort.value, key=lambda cluster: (cluster.sort_value(sort), cluster.id))

    async def update_status(
        self, cluster_id: int, *, status: ClusterStatus, reviewer_did: str, reviewed_at: datetime
    ) -> SybilCluster | None:
        row = await self._pool.fetchrow(
            f"""
            UPDATE sybil_clusters
            SET status = $2, reviewed_by = $3, reviewed_at = $4, updated_at = $4
            WHERE id = $1
            RETURNING {_COLUMNS}
            """,
            cluster_id,
            status.value,
            reviewer_did,
            reviewed_at,
        )
        return _row_to_cluster(row) if row else None

    async def find_by_hash(self, digest: str) -> SybilCluster | None:
        row = await self._pool.fetchrow(f"SELECT {_COLUMNS} FROM sybil_clusters WHERE cluster_hash = $1", digest)
        return _row_to_cluster(row) if row else None

    async def upsert_detected(self, detected: DetectedCluster, *, digest: str, detected_at: datetime) -> SybilCluster:
        row = await self._pool.fetchrow(
            f"""
            INSERT INTO sybil_clusters (cluster_hash, internal_edge_count, external_edge_count, member_count, detected_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $5)
            ON CONFLICT (cluster_hash) DO UPDATE SET
                internal_edge_count = EXCLUDED.internal_edge_count,
                external_edge_count = EXCLUDED.external_edge_count,
                member_count = EXCLUDED.member_count,
                updated_at = EXCLUDED.updated_at
            RETURNING {_COLUMNS}
            """,
            digest,
            detected.internal_edges,
            detected.external_edges,
            len(detected.members),
            detected_at,
        )
        if row is None:  # pragma: no cover - asyncpg always returns a row for RETURNING
            raise RuntimeError("Failed to upsert sybil_clusters row")
        return _row_to_cluster(row)

    async def replace_members(self, cluster_id: int, roles: Mapping[str, MemberRole], *, joined_at: datetime) -> None:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("DELETE FROM sybil_cluster_members WHERE cluster_id = $1", cluster_id)
                await conn.executemany(
                    """
                    INSERT INTO sybil_cluster_members (cluster_id, did, role_in_cluster, joined_at)
                    VALUES ($1, $2, $3, $4)
                    """,
                    [(cluster_id, did, role.value, joined_at) for did, role in roles.items()],
                )

    async def flagged_cluster_peers(self, did: str) -> set[str] | None:
        rows = await self._pool.fetch(
            """
            SELECT DISTINCT peer.did
            FROM sybil_cluster_members self_member
            JOIN sybil_clusters c ON c.id = self_member.cluster_id AND c.status = 'flagged'
            JOIN sybil_cluster_members peer ON peer.cluster_id = self_member.cluster_id
            WHERE self_member.did = $1
            """,
            did,
        )
        if not rows:
            return None
        return {str(row["did"]) for row in rows}

    async def count_by_status(self, status: ClusterStatus) -> int:
        value = await self._pool.fetchval("SELECT count(*) FROM sybil_clusters WHERE status = $1", status.value)
        return int(value or 0)


class PostgresSybilGraphSource(SybilGraphSource):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def low_trust_dids(self, community_did: str | None, threshold: float) -> set[str]:
        scopes = ["", community_did] if community_did else [""]
        rows = await self._pool.fetch(
            "SELECT DISTINCT did FROM trust_scores WHERE community_id = ANY($1::text[]) AND score < $2",
            scopes,
            threshold,
        )
        return {str(row["did"]) for row in rows}

    async def edges_touching(self, dids: set[str], community_did: str | None) -> Sequence[tuple[str, str]]:
        if not dids:
            return []
        rows = await self._pool.fetch(
            """
            SELECT source_did, target_did
            FROM interaction_graph
            WHERE (source_did = ANY($1::text[]) OR target_did = ANY($1::text[]))
              AND ($2::text IS NULL OR community_id = $2)
            """,
            sorted(dids),
            community_did,
        )
        return [(str(row["source_did"]), str(row["target_did"])) for row in rows]
