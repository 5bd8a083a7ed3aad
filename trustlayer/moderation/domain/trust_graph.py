"""Client for the external trust graph service that owns score propagation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx


@dataclass(frozen=True)
class RecomputeSummary:
    """What the graph service reports after a full recomputation."""

    total_nodes: int
    total_edges: int
    duration_ms: int | None = None


class TrustGraphClient(Protocol):
    async def get_trust_score(self, did: str, community_did: str | None) -> float:
        ...

    async def compute_trust_scores(self, community_did: str | None) -> RecomputeSummary:
        ...


@dataclass
class HttpTrustGraphClient(TrustGraphClient):
    http: httpx.AsyncClient
    base_url: str
    score_timeout: float = 2.0
    recompute_timeout: float = 600.0

    async def get_trust_score(self, did: str, community_did: str | None) -> float:
        params = {"community": community_did} if community_did else None
        response = await self.http.get(
            f"{self.base_url.rstrip('/')}/trust-scores/{did}",
            params=params,
            timeout=self.score_timeout,
        )
        response.raise_for_status()
        payload: dict[str, Any] = response.json()
        return float(payload["score"])

    async def compute_trust_scores(self, community_did: str | None) -> RecomputeSummary:
        response = await self.http.post(
            f"{self.base_url.rstrip('/')}/recompute",
            json={"community": community_did},
            timeout=self.recompute_timeout,
        )
        response.raise_for_status()
        payload: dict[str, Any] = response.json()
        return RecomputeSummary(
            total_nodes=int(payload.get("totalNodes", 0)),
            total_edges=int(payload.get("totalEdges", 0)),
            duration_ms=payload.get("durationMs"),
        )


@dataclass
class StaticTrustGraphClient(TrustGraphClient):
    """Fixed scores for local development and tests."""

    scores: dict[str, float] = field(default_factory=dict)
    default_score: float = 0.5
    recompute_calls: int = 0

    async def get_trust_score(self, did: str, community_did: str | None) -> float:
        return self.scores.get(did, self.default_score)

    async def compute_trust_scores(self, community_did: str | None) -> RecomputeSummary:
        self.recompute_calls += 1
        return RecomputeSummary(total_nodes=len(self.scores), total_edges=0, duration_ms=0)


class GraphStats(Protocol):
    async def count_nodes(self) -> int:
        ...

    async def count_edges(self) -> int:
        ...


@dataclass
class InMemoryGraphStats(GraphStats):
    nodes: int = 0
    edges: int = 0

    async def count_nodes(self) -> int:
        return self.nodes

    async def count_edges(self) -> int:
        return self.edges
