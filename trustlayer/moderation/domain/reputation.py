"""Composite reputation scoring and PDS trust factor administration."""

from __future__ import annotations

import asyncio
import logging
import math
import re
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Iterable, Protocol

from trustlayer.moderation.domain.accounts import STAFF_ROLES, AccountDirectory, pds_host_for_handle
from trustlayer.moderation.domain.errors import AccountNotFoundError, InvalidInputError
from trustlayer.moderation.domain.pagination import Page, clamp_limit, paginate_desc
from trustlayer.moderation.domain.scope import Scope, scope_for
from trustlayer.moderation.domain.sybil import SybilClusterRepository
from trustlayer.moderation.domain.trust import TrustRepository, TrustSeedService
from trustlayer.moderation.domain.trust_graph import TrustGraphClient
from trustlayer.obs import metrics

logger = logging.getLogger(__name__)

TOPIC_WEIGHT = 5
REPLY_WEIGHT = 2
REACTION_WEIGHT = 1

DEFAULT_TRUST_SCORE = 0.1
DEFAULT_PDS_TRUST_FACTOR = 0.3

_HOSTNAME = re.compile(r"^(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)+[a-zA-Z]{2,}$")
_MAX_HOSTNAME_LENGTH = 253


@dataclass(slots=True)
class ContentCounts:
    topics: int = 0
    replies: int = 0
    reactions_received: int = 0
    community_count: int = 0


@dataclass(slots=True)
class ReputationBreakdown:
    topic_count: int
    reply_count: int
    reactions_received: int
    trust_score: float
    pds_trust_factor: float
    cluster_diversity_factor: float


@dataclass(slots=True)
class Reputation:
    did: str
    handle: str
    reputation: int
    breakdown: ReputationBreakdown
    community_count: int


@dataclass(slots=True)
class TrustStatus:
    did: str
    community_did: str
    approved_post_count: int
    is_trusted: bool
    trusted_at: datetime | None
    is_seed: bool
    is_staff: bool


@dataclass(slots=True)
class PdsTrustFactor:
    id: int
    pds_host: str
    trust_factor: float
    is_default: bool
    updated_at: datetime


class ContentStats(Protocol):
    async def content_counts(self, did: str) -> ContentCounts:
        ...

    async def interaction_targets(self, did: str) -> set[str]:
        ...


class PdsTrustFactorRepository(Protocol):
    async def get(self, pds_host: str) -> PdsTrustFactor | None:
        ...

    async def list_factors(self, *, cursor: str | None, limit: int) -> Page[PdsTrustFactor]:
        ...

    async def upsert(self, pds_host: str, trust_factor: float, *, updated_at: datetime) -> PdsTrustFactor:
        ...


def base_reputation(counts: ContentCounts) -> int:
    return counts.topics * TOPIC_WEIGHT + counts.replies * REPLY_WEIGHT + counts.reactions_received * REACTION_WEIGHT


def cluster_diversity_factor(in_flagged_cluster: bool, external_targets: int) -> float:
    """1 outside flagged clusters; otherwise grows with distinct outside targets, capped at 1."""

    if not in_flagged_cluster:
        return 1.0
    return min(1.0, math.log2(1 + max(0, external_targets)))


def compute_reputation(counts: ContentCounts, trust_score: float, pds_factor: float, diversity: float) -> int:
    """Rounds halves up (factors are never negative)."""

    return math.floor(base_reputation(counts) * trust_score * pds_factor * diversity + 0.5)


class PdsTrustFactorService:
    def __init__(self, repository: PdsTrustFactorRepository) -> None:
        self._repo = repository

    async def list_factors(self, *, cursor: str | None = None, limit: int | None = None) -> Page[PdsTrustFactor]:
        return await self._repo.list_factors(cursor=cursor, limit=clamp_limit(limit))

    async def upsert_factor(self, pds_host: str, trust_factor: float) -> PdsTrustFactor:
        if not pds_host or len(pds_host) > _MAX_HOSTNAME_LENGTH or not _HOSTNAME.match(pds_host):
            raise InvalidInputError("invalid_pds_host")
        if isinstance(trust_factor, bool) or not 0.0 <= float(trust_factor) <= 1.0:
            raise InvalidInputError("invalid_trust_factor")
        factor = await self._repo.upsert(pds_host, float(trust_factor), updated_at=datetime.now(timezone.utc))
        logger.info("pds_trust_factor_updated", extra={"pds_host": pds_host, "trust_factor": factor.trust_factor})
        return factor

    async def factor_for_handle(self, handle: str) -> float:
        try:
            row = await self._repo.get(pds_host_for_handle(handle))
        except Exception:
            logger.warning("pds_trust_factor_lookup_failed", extra={"handle": handle}, exc_info=True)
            return DEFAULT_PDS_TRUST_FACTOR
        return row.trust_factor if row is not None else DEFAULT_PDS_TRUST_FACTOR


class ReputationCalculator:
    """Combines activity, graph trust, hosting trust and cluster diversity."""

    def __init__(
        self,
        *,
        accounts: AccountDirectory,
        stats: ContentStats,
        trust_graph: TrustGraphClient,
        pds_factors: PdsTrustFactorService,
        clusters: SybilClusterRepository,
        trust: TrustRepository,
        seeds: TrustSeedService,
        score_timeout: float = 2.0,
        staff_roles: Iterable[str] = STAFF_ROLES,
    ) -> None:
        self._accounts = accounts
        self._stats = stats
        self._graph = trust_graph
        self._pds = pds_factors
        self._clusters = clusters
        self._trust = trust
        self._seeds = seeds
        self._score_timeout = score_timeout
        self._staff_roles = frozenset(role.lower() for role in staff_roles)

    async def get_reputation(self, did: str) -> Reputation:
        account = await self._accounts.get_account(did)
        if account is None:
            raise AccountNotFoundError(did)
        counts = await self._stats.content_counts(did)
        trust_score = await self.trust_score(did)
        pds_factor = await self._pds.factor_for_handle(account.handle)
        diversity = await self.cluster_diversity(did)
        return Reputation(
            did=did,
            handle=account.handle,
            reputation=compute_reputation(counts, trust_score, pds_factor, diversity),
            breakdown=ReputationBreakdown(
                topic_count=counts.topics,
                reply_count=counts.replies,
                reactions_received=counts.reactions_received,
                trust_score=trust_score,
                pds_trust_factor=pds_factor,
                cluster_diversity_factor=diversity,
            ),
            community_count=counts.community_count,
        )

    async def trust_score(self, did: str, community_did: str | None = None) -> float:
        try:
            return await asyncio.wait_for(self._graph.get_trust_score(did, community_did), timeout=self._score_timeout)
        except Exception:
            logger.warning("trust_score_fallback", extra={"did": did}, exc_info=True)
            metrics.TRUST_SCORE_FALLBACKS.inc()
            return DEFAULT_TRUST_SCORE

    async def cluster_diversity(self, did: str) -> float:
        try:
            peers = await self._clusters.flagged_cluster_peers(did)
            if peers is None:
                return 1.0
            external = await self._stats.interaction_targets(did)
        except Exception:
            logger.warning("cluster_diversity_lookup_failed", extra={"did": did}, exc_info=True)
            return 1.0
        return cluster_diversity_factor(True, len(external - peers))

    async def get_trust_status(self, did: str, community_did: str) -> TrustStatus:
        account = await self._accounts.get_account(did)
        if account is None:
            raise AccountNotFoundError(did)
        record = await self._trust.get(did, community_did)
        scope: Scope = scope_for(community_did)
        return TrustStatus(
            did=did,
            community_did=community_did,
            approved_post_count=record.approved_post_count if record else 0,
            is_trusted=record.is_trusted if record else False,
            trusted_at=record.trusted_at if record else None,
            is_seed=await self._seeds.is_seed(did, scope),
            is_staff=account.is_staff(self._staff_roles),
        )


class InMemoryContentStats(ContentStats):
    def __init__(self) -> None:
        self.counts: dict[str, ContentCounts] = {}
        self.targets: dict[str, set[str]] = {}

    async def content_counts(self, did: str) -> ContentCounts:
        return self.counts.get(did, ContentCounts())

    async def interaction_targets(self, did: str) -> set[str]:
        return set(self.targets.get(did, set()))


class InMemoryPdsTrustFactorRepository(PdsTrustFactorRepository):
    def __init__(self) -> None:
        self.factors: dict[str, PdsTrustFactor] = {}
        self._next_id = 1

    async def get(self, pds_host: str) -> PdsTrustFactor | None:
        return self.factors.get(pds_host)

    async def list_factors(self, *, cursor: str | None, limit: int) -> Page[PdsTrustFactor]:
        return paginate_desc(
            list(self.factors.values()),
            limit=limit,
            cursor=cursor,
            sort_field="updated_at",
            key=lambda factor: (factor.updated_at, factor.id),
        )

    async def upsert(self, pds_host: str, trust_factor: float, *, updated_at: datetime) -> PdsTrustFactor:
        existing = self.factors.get(pds_host)
        if existing is not None:
            stored = replace(existing, trust_factor=trust_factor, is_default=False, updated_at=updated_at)
        else:
            stored = PdsTrustFactor(
                id=self._next_id,
                pds_host=pds_host,
                trust_factor=trust_factor,
                is_default=False,
                updated_at=updated_at,
            )
            self._next_id += 1
        self.factors[pds_host] = stored
        return stored
