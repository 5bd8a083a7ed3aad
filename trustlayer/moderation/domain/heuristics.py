"""Batch detectors for coordinated-abuse patterns."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from itertools import combinations
from typing import Awaitable, Callable, Optional, Protocol, Sequence

from trustlayer.moderation.domain.errors import BehavioralFlagNotFoundError, InvalidInputError
from trustlayer.moderation.domain.pagination import Page, clamp_limit, paginate_desc
from trustlayer.obs import metrics

logger = logging.getLogger(__name__)

BURST_WINDOW = timedelta(minutes=10)
BURST_REACTION_THRESHOLD = 20

SIMILARITY_WINDOW = timedelta(hours=24)
SIMILARITY_THRESHOLD = 0.8
SIMILARITY_MIN_AUTHORS = 3
MIN_TRIGRAMS = 3

DIVERSITY_WINDOW = timedelta(days=7)
DIVERSITY_MIN_INTERACTIONS = 10
DIVERSITY_MAX_TARGETS = 2

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


class FlagType(str, Enum):
    BURST_VOTING = "burst_voting"
    CONTENT_SIMILARITY = "content_similarity"
    LOW_DIVERSITY = "low_diversity"


class FlagStatus(str, Enum):
    PENDING = "pending"
    DISMISSED = "dismissed"
    ACTION_TAKEN = "action_taken"


@dataclass(slots=True)
class BehavioralFlag:
    flag_type: FlagType
    affected_dids: list[str]
    details: str
    detected_at: datetime
    community_did: str | None = None
    status: FlagStatus = FlagStatus.PENDING
    id: int | None = None


@dataclass(slots=True)
class AuthorReactionCount:
    author_did: str
    count: int


@dataclass(slots=True)
class PostSample:
    uri: str
    author_did: str
    content: str


@dataclass(slots=True)
class InteractionDiversity:
    source_did: str
    total_interactions: int
    distinct_targets: int


class ActivitySource(Protocol):
    """Read-only aggregates over reactions, posts and the interaction graph."""

    async def reaction_counts(self, since: datetime, community_did: str | None) -> Sequence[AuthorReactionCount]:
        ...

    async def recent_posts(self, since: datetime, community_did: str | None) -> Sequence[PostSample]:
        ...

    async def interaction_diversity(self, since: datetime, community_did: str | None) -> Sequence[InteractionDiversity]:
        ...


class FlagRepository(Protocol):
    async def insert(self, flag: BehavioralFlag) -> BehavioralFlag:
        ...

    async def get(self, flag_id: int) -> BehavioralFlag | None:
        ...

    async def list_flags(
        self,
        *,
        flag_type: FlagType | None,
        status: FlagStatus | None,
        cursor: str | None,
        limit: int,
    ) -> Page[BehavioralFlag]:
        ...

    async def update_status(self, flag_id: int, status: FlagStatus) -> BehavioralFlag | None:
        ...


def trigrams(text: str) -> set[str]:
    normalized = _NON_ALNUM.sub(" ", text.lower()).strip()
    return {normalized[i : i + 3] for i in range(len(normalized) - 2)}


def jaccard(a: set[str], b: set[str]) -> float:
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


class _DisjointSet:
    def __init__(self, size: int) -> None:
        self._parent = list(range(size))

    def find(self, index: int) -> int:
        while self._parent[index] != index:
            self._parent[index] = self._parent[self._parent[index]]
            index = self._parent[index]
        return index

    def union(self, a: int, b: int) -> None:
        root_a, root_b = self.find(a), self.find(b)
        if root_a != root_b:
            self._parent[root_b] = root_a


def similar_author_groups(posts: Sequence[PostSample], *, threshold: float = SIMILARITY_THRESHOLD) -> list[list[str]]:
    """Group near-duplicate posts by different authors; return each group's authors."""

    fingerprints = [trigrams(post.content) for post in posts]
    groups = _DisjointSet(len(posts))
    linked: set[int] = set()
    for i, j in combinations(range(len(posts)), 2):
        if posts[i].author_did == posts[j].author_did:
            continue
        if len(fingerprints[i]) < MIN_TRIGRAMS or len(fingerprints[j]) < MIN_TRIGRAMS:
            continue
        if jaccard(fingerprints[i], fingerprints[j]) > threshold:
            groups.union(i, j)
            linked.update((i, j))

    authors: dict[int, dict[str, None]] = {}
    for index in sorted(linked):
        authors.setdefault(groups.find(index), {})[posts[index].author_did] = None
    return [list(dids) for dids in authors.values()]


class BehavioralHeuristicsEngine:
    """Runs the three detectors; each one logs and swallows its own failure."""

    def __init__(self, activity: ActivitySource, flags: FlagRepository) -> None:
        self._activity = activity
        self._flags = flags

    async def detect_burst_voting(self, community_did: str | None = None) -> list[BehavioralFlag]:
        async def detect(now: datetime) -> list[BehavioralFlag]:
            rows = await self._activity.reaction_counts(now - BURST_WINDOW, community_did)
            offenders = [row for row in rows if row.count >= BURST_REACTION_THRESHOLD]
            if not offenders:
                return []
            minutes = int(BURST_WINDOW.total_seconds() // 60)
            details = "Burst voting detected: " + "; ".join(
                f"{row.author_did}: {row.count} reactions in {minutes}min" for row in offenders
            )
            flag = BehavioralFlag(
                flag_type=FlagType.BURST_VOTING,
                affected_dids=[row.author_did for row in offenders],
                details=details,
                detected_at=now,
                community_did=community_did,
            )
            return [await self._persist(flag)]

        return await self._guarded("burst_voting", community_did, detect)

    async def detect_content_similarity(self, community_did: str | None = None) -> list[BehavioralFlag]:
        async def detect(now: datetime) -> list[BehavioralFlag]:
            posts = await self._activity.recent_posts(now - SIMILARITY_WINDOW, community_did)
            found = []
            for dids in similar_author_groups(posts):
                if len(dids) < SIMILARITY_MIN_AUTHORS:
                    continue
                flag = BehavioralFlag(
                    flag_type=FlagType.CONTENT_SIMILARITY,
                    affected_dids=dids,
                    details=(
                        f"High content similarity (Jaccard > {SIMILARITY_THRESHOLD}) detected across "
                        f"{len(dids)} different accounts"
                    ),
                    detected_at=now,
                    community_did=community_did,
                )
                found.append(await self._persist(flag))
            return found

        return await self._guarded("content_similarity", community_did, detect)

    async def detect_low_diversity(self, community_did: str | None = None) -> list[BehavioralFlag]:
        async def detect(now: datetime) -> list[BehavioralFlag]:
            rows = await self._activity.interaction_diversity(now - DIVERSITY_WINDOW, community_did)
            offenders = [
                row
                for row in rows
                if row.total_interactions >= DIVERSITY_MIN_INTERACTIONS and row.distinct_targets <= DIVERSITY_MAX_TARGETS
            ]
            if not offenders:
                return []
            details = "Low interaction diversity: " + "; ".join(
                f"{row.source_did}: {row.total_interactions} interactions, {row.distinct_targets} unique targets"
                for row in offenders
            )
            flag = BehavioralFlag(
                flag_type=FlagType.LOW_DIVERSITY,
                affected_dids=[row.source_did for row in offenders],
                details=details,
                detected_at=now,
                community_did=community_did,
            )
            return [await self._persist(flag)]

        return await self._guarded("low_diversity", community_did, detect)

    async def run_all(self, community_did: str | None = None) -> list[BehavioralFlag]:
        results = await asyncio.gather(
            self.detect_burst_voting(community_did),
            self.detect_content_similarity(community_did),
            self.detect_low_diversity(community_did),
        )
        return [flag for batch in results for flag in batch]

    async def list_flags(
        self,
        *,
        flag_type: FlagType | None = None,
        status: FlagStatus | None = None,
        cursor: str | None = None,
        limit: int | None = None,
    ) -> Page[BehavioralFlag]:
        return await self._flags.list_flags(flag_type=flag_type, status=status, cursor=cursor, limit=clamp_limit(limit))

    async def update_flag_status(self, flag_id: int, status: FlagStatus) -> BehavioralFlag:
        if status is FlagStatus.PENDING:
            raise InvalidInputError("invalid_flag_status")
        updated = await self._flags.update_status(flag_id, status)
        if updated is None:
            raise BehavioralFlagNotFoundError(str(flag_id))
        logger.info("behavioral_flag_status_updated", extra={"flag_id": flag_id, "status": status.value})
        return updated

    async def _persist(self, flag: BehavioralFlag) -> BehavioralFlag:
        stored = await self._flags.insert(flag)
        metrics.BEHAVIORAL_FLAGS.labels(flag_type=flag.flag_type.value).inc()
        logger.warning(
            "behavioral_flag_raised",
            extra={
                "flag_type": flag.flag_type.value,
                "affected_dids": flag.affected_dids,
                "community_did": flag.community_did,
            },
        )
        return stored

    async def _guarded(
        self,
        detector: str,
        community_did: str | None,
        detect: Callable[[datetime], Awaitable[list[BehavioralFlag]]],
    ) -> list[BehavioralFlag]:
        try:
            return await detect(datetime.now(timezone.utc))
        except Exception:
            logger.exception("heuristics_detector_failed", extra={"detector": detector, "community_did": community_did})
            metrics.DETECTOR_FAILURES.labels(detector=detector).inc()
            return []


@dataclass(slots=True)
class ReactionEvent:
    author_did: str
    subject_uri: str
    community_did: str
    created_at: datetime


@dataclass(slots=True)
class PostEvent:
    uri: str
    author_did: str
    community_did: str
    content: str
    created_at: datetime


@dataclass(slots=True)
class InteractionEdge:
    source_did: str
    target_did: str
    community_did: str
    weight: int = 1
    last_interaction_at: Optional[datetime] = None


@dataclass
class InMemoryActivitySource(ActivitySource):
    reactions: list[ReactionEvent] = field(default_factory=list)
    posts: list[PostEvent] = field(default_factory=list)
    edges: list[InteractionEdge] = field(default_factory=list)

    async def reaction_counts(self, since: datetime, community_did: str | None) -> Sequence[AuthorReactionCount]:
        counts: dict[str, int] = {}
        for reaction in self.reactions:
            if reaction.created_at < since or (community_did and reaction.community_did != community_did):
                continue
            counts[reaction.author_did] = counts.get(reaction.author_did, 0) + 1
        return [AuthorReactionCount(author_did=did, count=count) for did, count in counts.items()]

    async def recent_posts(self, since: datetime, community_did: str | None) -> Sequence[PostSample]:
        return [
            PostSample(uri=post.uri, author_did=post.author_did, content=post.content)
            for post in self.posts
            if post.created_at >= since and (not community_did or post.community_did == community_did)
        ]

    async def interaction_diversity(self, since: datetime, community_did: str | None) -> Sequence[InteractionDiversity]:
        totals: dict[str, int] = {}
        targets: dict[str, set[str]] = {}
        for edge in self.edges:
            if edge.last_interaction_at is not None and edge.last_interaction_at < since:
                continue
            if community_did and edge.community_did != community_did:
                continue
            totals[edge.source_did] = totals.get(edge.source_did, 0) + edge.weight
            targets.setdefault(edge.source_did, set()).add(edge.target_did)
        return [
            InteractionDiversity(source_did=did, total_interactions=total, distinct_targets=len(targets[did]))
            for did, total in totals.items()
        ]


class InMemoryFlagRepository(FlagRepository):
    def __init__(self) -> None:
        self.flags: dict[int, BehavioralFlag] = {}
        self._next_id = 1

    async def insert(self, flag: BehavioralFlag) -> BehavioralFlag:
        stored = replace(flag, id=self._next_id, affected_dids=list(flag.affected_dids))
        self.flags[stored.id] = stored
        self._next_id += 1
        return stored

    async def get(self, flag_id: int) -> BehavioralFlag | None:
        return self.flags.get(flag_id)

    async def list_flags(
        self,
        *,
        flag_type: FlagType | None,
        status: FlagStatus | None,
        cursor: str | None,
        limit: int,
    ) -> Page[BehavioralFlag]:
        rows = [
            flag
            for flag in self.flags.values()
            if (flag_type is None or flag.flag_type is flag_type) and (status is None or flag.status is status)
        ]
        return paginate_desc(rows, limit=limit, cursor=cursor, sort_field="detected_at", key=lambda flag: (flag.detected_at, flag.id or 0))

    async def update_status(self, flag_id: int, status: FlagStatus) -> BehavioralFlag | None:
        current = self.flags.get(flag_id)
        if current is None:
            return None
        updated = replace(current, status=status)
        self.flags[flag_id] = updated
        return updated
