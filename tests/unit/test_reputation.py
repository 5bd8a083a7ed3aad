import asyncio
from datetime import datetime, timezone

import httpx
import pytest

from trustlayer.moderation.domain.accounts import InMemoryAccountDirectory
from trustlayer.moderation.domain.errors import AccountNotFoundError, InvalidInputError
from trustlayer.moderation.domain.reputation import (
    DEFAULT_PDS_TRUST_FACTOR,
    DEFAULT_TRUST_SCORE,
    ContentCounts,
    InMemoryContentStats,
    InMemoryPdsTrustFactorRepository,
    PdsTrustFactorService,
    ReputationCalculator,
    base_reputation,
    cluster_diversity_factor,
    compute_reputation,
)
from trustlayer.moderation.domain.scope import GLOBAL
from trustlayer.moderation.domain.sybil import ClusterMember, ClusterStatus, InMemorySybilClusterRepository, MemberRole, SybilCluster
from trustlayer.moderation.domain.trust import (
    AccountTrust,
    InMemoryTrustRepository,
    InMemoryTrustSeedRepository,
    TrustSeedService,
)
from trustlayer.moderation.domain.trust_graph import HttpTrustGraphClient, StaticTrustGraphClient

from tests.factories import ALICE, BOB, COMMUNITY, MODERATOR, make_account


class SlowGraph(StaticTrustGraphClient):
    async def get_trust_score(self, did, community_did):
        await asyncio.sleep(1)
        return 0.9


class BrokenPdsRepository(InMemoryPdsTrustFactorRepository):
    async def get(self, pds_host):
        raise ConnectionRefusedError("postgres unavailable")


def build_calculator(*, graph=None, pds_repo=None, score_timeout=2.0):
    accounts = InMemoryAccountDirectory(
        [
            make_account(ALICE, "alice.bsky.social"),
            make_account(BOB, "bob.example.net"),
            make_account(MODERATOR, "mod.forum.example", role="moderator"),
        ]
    )
    stats = InMemoryContentStats()
    clusters = InMemorySybilClusterRepository()
    trust = InMemoryTrustRepository()
    seed_repo = InMemoryTrustSeedRepository()
    pds = PdsTrustFactorService(pds_repo or InMemoryPdsTrustFactorRepository())
    calculator = ReputationCalculator(
        accounts=accounts,
        stats=stats,
        trust_graph=graph or StaticTrustGraphClient(),
        pds_factors=pds,
        clusters=clusters,
        trust=trust,
        seeds=TrustSeedService(seed_repo, accounts),
        score_timeout=score_timeout,
    )
    return calculator, stats, clusters, trust, pds, seed_repo


def flag_cluster(clusters, members):
    stamp = datetime.now(timezone.utc)
    clusters.add(
        SybilCluster(
            id=1,
            cluster_hash="abc",
            internal_edge_count=10,
            external_edge_count=0,
            member_count=len(members),
            detected_at=stamp,
            updated_at=stamp,
            status=ClusterStatus.FLAGGED,
        ),
        [ClusterMember(1, did, MemberRole.CORE, stamp) for did in members],
    )


def test_base_reputation_weights():
    assert base_reputation(ContentCounts(topics=2, replies=3, reactions_received=4)) == 20


def test_cluster_diversity_factor():
    assert cluster_diversity_factor(False, 0) == 1.0
    assert cluster_diversity_factor(True, 0) == 0.0
    assert cluster_diversity_factor(True, 1) == 1.0
    assert cluster_diversity_factor(True, 50) == 1.0


def test_compute_reputation_rounds_halves_up():
    assert compute_reputation(ContentCounts(topics=1), 0.5, 1.0, 1.0) == 3
    assert compute_reputation(ContentCounts(reactions_received=1), 0.5, 1.0, 1.0) == 1
    assert compute_reputation(ContentCounts(replies=3), 0.25, 1.0, 1.0) == 2
    assert compute_reputation(ContentCounts(topics=1), 0.4, 1.0, 1.0) == 2


@pytest.mark.asyncio
async def test_reputation_combines_every_factor():
    calculator, stats, _, _, pds, _ = build_calculator(graph=StaticTrustGraphClient(scores={ALICE: 0.5}))
    stats.counts[ALICE] = ContentCounts(topics=2, replies=3, reactions_received=4, community_count=2)
    await pds.upsert_factor("bsky.social", 1.0)

    reputation = await calculator.get_reputation(ALICE)

    assert reputation.reputation == 10
    assert reputation.handle == "alice.bsky.social"
    assert reputation.community_count == 2
    assert reputation.breakdown.trust_score == 0.5
    assert reputation.breakdown.pds_trust_factor == 1.0
    assert reputation.breakdown.cluster_diversity_factor == 1.0


@pytest.mark.asyncio
async def test_unknown_pds_host_uses_default_factor():
    calculator, stats, _, _, _, _ = build_calculator(graph=StaticTrustGraphClient(scores={BOB: 1.0}))
    stats.counts[BOB] = ContentCounts(topics=10)

    reputation = await calculator.get_reputation(BOB)

    assert reputation.breakdown.pds_trust_factor == DEFAULT_PDS_TRUST_FACTOR
    assert reputation.reputation == 15


@pytest.mark.asyncio
async def test_pds_lookup_failure_uses_default_factor():
    calculator, _, _, _, _, _ = build_calculator(pds_repo=BrokenPdsRepository())

    reputation = await calculator.get_reputation(ALICE)

    assert reputation.breakdown.pds_trust_factor == DEFAULT_PDS_TRUST_FACTOR


@pytest.mark.asyncio
async def test_slow_trust_graph_falls_back():
    calculator, stats, _, _, _, _ = build_calculator(graph=SlowGraph(), score_timeout=0.01)
    stats.counts[ALICE] = ContentCounts(topics=20)

    reputation = await calculator.get_reputation(ALICE)

    assert reputation.breakdown.trust_score == DEFAULT_TRUST_SCORE
    assert reputation.reputation == 3


@pytest.mark.asyncio
async def test_flagged_cluster_member_without_outside_targets_scores_zero():
    calculator, stats, clusters, _, _, _ = build_calculator()
    stats.counts[ALICE] = ContentCounts(topics=10)
    stats.targets[ALICE] = {BOB}
    flag_cluster(clusters, [ALICE, BOB, "did:plc:carol"])

    isolated = await calculator.get_reputation(ALICE)
    stats.targets[ALICE] = {BOB, "did:plc:outsider"}
    connected = await calculator.get_reputation(ALICE)

    assert isolated.breakdown.cluster_diversity_factor == 0.0
    assert isolated.reputation == 0
    assert connected.breakdown.cluster_diversity_factor == 1.0


@pytest.mark.asyncio
async def test_reputation_for_unknown_account():
    calculator, *_ = build_calculator()

    with pytest.raises(AccountNotFoundError):
        await calculator.get_reputation("did:plc:ghost")


@pytest.mark.asyncio
async def test_pds_factor_validation_and_upsert():
    service = PdsTrustFactorService(InMemoryPdsTrustFactorRepository())

    for host in ("", "no_tld", "bad host.com", "a" * 250 + ".com"):
        with pytest.raises(InvalidInputError, match="invalid_pds_host"):
            await service.upsert_factor(host, 0.5)
    for value in (-0.1, 1.5):
        with pytest.raises(InvalidInputError, match="invalid_trust_factor"):
            await service.upsert_factor("bsky.social", value)

    created = await service.upsert_factor("bsky.social", 0.8)
    updated = await service.upsert_factor("bsky.social", 0)
    page = await service.list_factors()

    assert updated.id == created.id
    assert updated.trust_factor == 0.0
    assert not updated.is_default
    assert [factor.pds_host for factor in page.items] == ["bsky.social"]


@pytest.mark.asyncio
async def test_trust_status_reports_ledger_seed_and_staff():
    calculator, _, _, trust, _, seed_repo = build_calculator()
    stamp = datetime.now(timezone.utc)
    trust.put(AccountTrust(did=ALICE, community_did=COMMUNITY, approved_post_count=12, is_trusted=True, trusted_at=stamp))
    await seed_repo.create(did=ALICE, scope=GLOBAL, added_by=MODERATOR, reason=None, created_at=stamp)

    alice = await calculator.get_trust_status(ALICE, COMMUNITY)
    bob = await calculator.get_trust_status(BOB, COMMUNITY)
    moderator = await calculator.get_trust_status(MODERATOR, COMMUNITY)

    assert alice.is_trusted and alice.is_seed and not alice.is_staff
    assert alice.approved_post_count == 12
    assert alice.trusted_at == stamp
    assert bob.approved_post_count == 0 and not bob.is_trusted and not bob.is_seed
    assert moderator.is_staff and moderator.is_seed


@pytest.mark.asyncio
async def test_http_trust_graph_client_reads_score_and_recompute_summary():
    seen = []

    def handler(request):
        seen.append(request)
        if request.method == "GET":
            return httpx.Response(200, json={"score": 0.42})
        return httpx.Response(200, json={"totalNodes": 12, "totalEdges": 30, "durationMs": 5})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        client = HttpTrustGraphClient(http=http, base_url="http://graph.test/")
        score = await client.get_trust_score(ALICE, COMMUNITY)
        summary = await client.compute_trust_scores(None)

    assert score == 0.42
    assert seen[0].url.path == f"/trust-scores/{ALICE}"
    assert seen[0].url.params["community"] == COMMUNITY
    assert summary.total_nodes == 12
    assert summary.total_edges == 30
