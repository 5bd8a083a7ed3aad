"""Sybil cluster detection, review and ban propagation."""

from __future__ import annotations

import hashlib
import logging
import time
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Mapping, Protocol, Sequence

from trustlayer.moderation.domain.accounts import AccountDirectory
from trustlayer.moderation.domain.errors import ClusterNotFoundError, InvalidInputError
from trustlayer.moderation.domain.pagination import Page, clamp_limit, decode_cursor, paginate_desc
from trustlayer.obs import metrics

logger = logging.getLogger(__name__)

LOW_TRUST_THRESHOLD = 0.05
MIN_CLUSTER_SIZE = 3
INTERNAL_RATIO_THRESHOLD = 0.8


class ClusterStatus(str, Enum):
    FLAGGED = "flagged"
    DISMISSED = "dismissed"
    MONITORING = "monitoring"
    BANNED = "banned"


class MemberRole(str, Enum):
    CORE = "core"
    PERIPHERAL = "peripheral"


class ClusterSort(str, Enum):
    DETECTED_AT = "detected_at"
    MEMBER_COUNT = "member_count"
    SUSPICION_RATIO = "suspicion_ratio"


def suspicion_ratio(internal_edges: int, external_edges: int) -> float:
    total = internal_edges + external_edges
    return internal_edges / total if total > 0 else 0.0


@dataclass(slots=True)
class SybilCluster:
    id: int
    cluster_hash: str
    internal_edge_count: int
    external_edge_count: int
    member_count: int
    detected_at: datetime
    updated_at: datetime
    status: ClusterStatus = ClusterStatus.FLAGGED
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None

    @property
    def suspicion_ratio(self) -> float:
        return suspicion_ratio(self.internal_edge_count, self.external_edge_count)

    def sort_value(self, sort: ClusterSort):
        if sort is ClusterSort.MEMBER_COUNT:
            return self.member_count
        if sort is ClusterSort.SUSPICION_RATIO:
            return self.suspicion_ratio
        return self.detected_at


@dataclass(slots=True)
class ClusterMember:
    cluster_id: int
    did: str
    role_in_cluster: MemberRole
    joined_at: datetime
    handle: str | None = None
    display_name: str | None = None


@dataclass(slots=True)
class ClusterDetail:
    cluster: SybilCluster
    members: list[ClusterMember]


@dataclass(slots=True)
class BanPropagationReport:
    cluster: SybilCluster
    banned: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


@dataclass(slots=True)
class DetectedCluster:
    members: list[str]
    internal_edges: int
    external_edges: int

    @property
    def ratio(self) -> float:
        return suspicion_ratio(self.internal_edges, self.external_edges)


@dataclass(slots=True)
class DetectionSummary:
    clusters_detected: int
    total_low_trust_dids: int
    duration_ms: int


def cluster_hash(members: Iterable[str]) -> str:
    """Stable identity for a member set: SHA-256 over the sorted, comma-joined dids."""

    return hashlib.sha256(",".join(sorted(members)).encode("utf-8")).hexdigest()


def find_sybil_clusters(
    low_trust_dids: Iterable[str],
    subgraph: Mapping[str, set[str]],
    all_edges: Mapping[str, Sequence[str]],
    *,
    min_size: int = MIN_CLUSTER_SIZE,
    ratio_threshold: float = INTERNAL_RATIO_THRESHOLD,
) -> list[DetectedCluster]:
    """Connected components of the low-trust subgraph whose edges stay mostly internal.

    ``subgraph`` is undirected adjacency among low-trust accounts; ``all_edges``
    maps each low-trust source to every target it interacted with.
    """

    visited: set[str] = set()
    clusters: list[DetectedCluster] = []
    for start in low_trust_dids:
        if start in visited:
            continue
        visited.add(start)
        if start not in subgraph:
            continue
        component = []
        pending = deque([start])
        while pending:
            current = pending.popleft()
            component.append(current)
            for neighbour in subgraph.get(current, ()):
                if neighbour not in visited:
                    visited.add(neighbour)
                    pending.append(neighbour)
        if len(component) < min_size:
            continue

        members = set(component)
        internal = external = 0
        for member in component:
            for target in all_edges.get(member, ()):
                if target in members:
                    internal += 1
                else:
                    external += 1
        candidate = DetectedCluster(members=component, internal_edges=internal, external_edges=external)
        if candidate.ratio > ratio_threshold:
            clusters.append(candidate)
    return clusters


def classify_members(members: Sequence[str], subgraph: Mapping[str, set[str]]) -> dict[str, MemberRole]:
    """Members with more in-cluster neighbours than the median are core."""

    degrees = {member: len(subgraph.get(member, ())) for member in members}
    ordered = sorted(degrees.values())
    median = ordered[len(ordered) // 2] if ordered else 0
    return {member: MemberRole.CORE if degree > median else MemberRole.PERIPHERAL for member, degree in degrees.items()}


class SybilClusterRepository(Protocol):
    async def get(self, cluster_id: int) -> SybilCluster | None:
        ...

    async def list_members(self, cluster_id: int) -> Sequence[ClusterMember]:
        ...

    async def list_clusters(
        self,
        *,
        status: ClusterStatus | None,
        sort: ClusterSort,
        cursor: str | None,
        limit: int,
    ) -> Page[SybilCluster]:
        ...

    async def update_status(
        self, cluster_id: int, *, status: ClusterStatus, reviewer_did: str, reviewed_at: datetime
    ) -> SybilCluster | None:
        ...

    async def find_by_hash(self, digest: str) -> SybilCluster | None:
        ...

    async def upsert_detected(self, detected: DetectedCluster, *, digest: str, detected_at: datetime) -> SybilCluster:
        ...

    async def replace_members(self, cluster_id: int, roles: Mapping[str, MemberRole], *, joined_at: datetime) -> None:
        ...

    async def flagged_cluster_peers(self, did: str) -> set[str] | None:
        """Members of every flagged cluster containing ``did``; None when it is in none."""

    async def count_by_status(self, status: ClusterStatus) -> int:
        ...


class SybilGraphSource(Protocol):
    async def low_trust_dids(self, community_did: str | None, threshold: float) -> set[str]:
        ...

    async def edges_touching(self, dids: set[str], community_did: str | None) -> Sequence[tuple[str, str]]:
        """Directed (source, target) pairs where either end is in ``dids``."""


class SybilClusterRegistry:
    def __init__(self, repository: SybilClusterRepository, accounts: AccountDirectory) -> None:
        self._repo = repository
        self._accounts = accounts

    async def list_clusters(
        self,
        *,
        status: ClusterStatus | None = None,
        sort: ClusterSort = ClusterSort.DETECTED_AT,
        cursor: str | None = None,
        limit: int | None = None,
    ) -> Page[SybilCluster]:
        if cursor and decode_cursor(cursor).sort_field != sort.value:
            raise InvalidInputError("invalid_cursor")
        return await self._repo.list_clusters(status=status, sort=sort, cursor=cursor, limit=clamp_limit(limit))

    async def get_cluster(self, cluster_id: int) -> ClusterDetail:
        cluster = await self._repo.get(cluster_id)
        if cluster is None:
            raise ClusterNotFoundError(str(cluster_id))
        members = list(await self._repo.list_members(cluster_id))
        for member in members:
            account = await self._accounts.get_account(member.did)
            if account is not None:
                member.handle = account.handle
                member.display_name = account.display_name
        return ClusterDetail(cluster=cluster, members=members)

    async def update_status(self, cluster_id: int, status: ClusterStatus, reviewer_did: str) -> BanPropagationReport:
        """Commit the review first; a ban then fans out member by member."""

        if status is ClusterStatus.FLAGGED:
            raise InvalidInputError("invalid_cluster_status")
        updated = await self._repo.update_status(
            cluster_id,
            status=status,
            reviewer_did=reviewer_did,
            reviewed_at=datetime.now(timezone.utc),
        )
        if updated is None:
            raise ClusterNotFoundError(str(cluster_id))
        metrics.SYBIL_STATUS_CHANGES.labels(status=status.value).inc()
        report = BanPropagationReport(cluster=updated)
        if status is not ClusterStatus.BANNED:
            logger.info(
                "sybil_cluster_status_updated",
                extra={"cluster_id": cluster_id, "status": status.value, "reviewer_did": reviewer_did},
            )
            return report

        for member in await self._repo.list_members(cluster_id):
            try:
                await self._accounts.set_banned(member.did)
            except Exception:
                logger.exception("sybil_ban_propagation_failed", extra={"cluster_id": cluster_id, "did": member.did})
                metrics.BAN_PROPAGATION_FAILURES.inc()
                report.failed.append(member.did)
            else:
                report.banned.append(member.did)
        logger.warning(
            "sybil_cluster_banned",
            extra={
                "cluster_id": cluster_id,
                "banned_dids": report.banned,
                "failed_dids": report.failed,
                "reviewer_did": reviewer_did,
            },
        )
        return report

    async def record_detected_clusters(
        self,
        clusters: Sequence[DetectedCluster],
        subgraph: Mapping[str, set[str]],
    ) -> list[SybilCluster]:
        recorded = []
        for detected in clusters:
            digest = cluster_hash(detected.members)
            existing = await self._repo.find_by_hash(digest)
            if existing is not None and existing.status is ClusterStatus.DISMISSED:
                continue
            now = datetime.now(timezone.utc)
            cluster = await self._repo.upsert_detected(detected, digest=digest, detected_at=now)
            roles = classify_members(sorted(detected.members), subgraph)
            await self._repo.replace_members(cluster.id, roles, joined_at=now)
            recorded.append(cluster)
        return recorded

    async def count_flagged(self) -> int:
        return await self._repo.count_by_status(ClusterStatus.FLAGGED)


class SybilDetector:
    """Finds clusters among low-trust accounts and records them for review."""

    def __init__(self, graph: SybilGraphSource, registry: SybilClusterRegistry) -> None:
        self._graph = graph
        self._registry = registry

    async def detect_clusters(self, community_did: str | None = None) -> DetectionSummary:
        started = time.monotonic()
        low_trust = await self._graph.low_trust_dids(community_did, LOW_TRUST_THRESHOLD)
        if not low_trust:
            logger.info("sybil_detection_skipped", extra={"community_did": community_did})
            return DetectionSummary(clusters_detected=0, total_low_trust_dids=0, duration_ms=0)

        subgraph: dict[str, set[str]] = {}
        outgoing: dict[str, list[str]] = {}
        for source, target in await self._graph.edges_touching(low_trust, community_did):
            if source in low_trust and target in low_trust:
                subgraph.setdefault(source, set()).add(target)
                subgraph.setdefault(target, set()).add(source)
            if source in low_trust:
                outgoing.setdefault(source, []).append(target)

        detected = find_sybil_clusters(sorted(low_trust), subgraph, outgoing)
        recorded = await self._registry.record_detected_clusters(detected, subgraph)
        summary = DetectionSummary(
            clusters_detected=len(recorded),
            total_low_trust_dids=len(low_trust),
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        logger.info(
            "sybil_detection_completed",
            extra={
                "community_did": community_did,
                "clusters_detected": summary.clusters_detected,
                "total_low_trust_dids": summary.total_low_trust_dids,
                "duration_ms": summary.duration_ms,
            },
        )
        return summary


class InMemorySybilClusterRepository(SybilClusterRepository):
    def __init__(self) -> None:
        self.clusters: dict[int, SybilCluster] = {}
        self.members: dict[int, dict[str, ClusterMember]] = {}
        self._next_id = 1

    def add(self, cluster: SybilCluster, members: Iterable[ClusterMember] = ()) -> SybilCluster:
        self.clusters[cluster.id] = cluster
        self.members[cluster.id] = {member.did: member for member in members}
        self._next_id = max(self._next_id, cluster.id + 1)
        return cluster

    async def get(self, cluster_id: int) -> SybilCluster | None:
        return self.clusters.get(cluster_id)

    async def list_members(self, cluster_id: int) -> Sequence[ClusterMember]:
        return list(self.members.get(cluster_id, {}).values())

    async def list_clusters(
        self,
        *,
        status: ClusterStatus | None,
        sort: ClusterSort,
        cursor: str | None,
        limit: int,
    ) -> Page[SybilCluster]:
        rows = [cluster for cluster in self.clusters.values() if status is None or cluster.status is status]
        return paginate_desc(
            rows,
            limit=limit,
            cursor=cursor,
            sort_field=sort.value,
            key=lambda cluster: (cluster.sort_value(sort), cluster.id),
        )

    async def update_status(
        self, cluster_id: int, *, status: ClusterStatus, reviewer_did: str, reviewed_at: datetime
    ) -> SybilCluster | None:
        current = self.clusters.get(cluster_id)
        if current is None:
            return None
        updated = replace(current, status=status, reviewed_by=reviewer_did, reviewed_at=reviewed_at, updated_at=reviewed_at)
        self.clusters[cluster_id] = updated
        return updated

    async def find_by_hash(self, digest: str) -> SybilCluster | None:
        return next((cluster for cluster in self.clusters.values() if cluster.cluster_hash == digest), None)

    async def upsert_detected(self, detected: DetectedCluster, *, digest: str, detected_at: datetime) -> SybilCluster:
        existing = await self.find_by_hash(digest)
        if existing is not None:
            updated = replace(
                existing,
                internal_edge_count=detected.internal_edges,
                external_edge_count=detected.external_edges,
                member_count=len(detected.members),
                updated_at=detected_at,
            )
            self.clusters[existing.id] = updated
            return updated
        cluster = SybilCluster(
            id=self._next_id,
            cluster_hash=digest,
            internal_edge_count=detected.internal_edges,
            external_edge_count=detected.external_edges,
            member_count=len(detected.members),
            detected_at=detected_at,
            updated_at=detected_at,
        )
        return self.add(cluster)

    async def replace_members(self, cluster_id: int, roles: Mapping[str, MemberRole], *, joined_at: datetime) -> None:
        self.members[cluster_id] = {
            did: ClusterMember(cluster_id=cluster_id, did=did, role_in_cluster=role, joined_at=joined_at)
            for did, role in roles.items()
        }

    async def flagged_cluster_peers(self, did: str) -> set[str] | None:
        peers: set[str] | None = None
        for cluster_id, members in self.members.items():
            cluster = self.clusters.get(cluster_id)
            if cluster is None or cluster.status is not ClusterStatus.FLAGGED or did not in members:
                continue
            peers = (peers or set()) | set(members)
        return peers

    async def count_by_status(self, status: ClusterStatus) -> int:
        return sum(1 for cluster in self.clusters.values() if cluster.status is status)


class InMemorySybilGraphSource(SybilGraphSource):
    def __init__(self) -> None:
        self.trust_scores: dict[tuple[str, str], float] = {}
        self.edges: list[tuple[str, str, str]] = []

    async def low_trust_dids(self, community_did: str | None, threshold: float) -> set[str]:
        scopes = {"", community_did} if community_did else {""}
        return {did for (did, scope), score in self.trust_scores.items() if scope in scopes and score < threshold}

    async def edges_touching(self, dids: set[str], community_did: str | None) -> Sequence[tuple[str, str]]:
        return [
            (source, target)
            for source, target, community in self.edges
            if (source in dids or target in dids) and (community_did is None or community == community_did)
        ]
