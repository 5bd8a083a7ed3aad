from datetime import datetime, timedelta, timezone

import pytest

from trustlayer.moderation.domain.accounts import InMemoryAccountDirectory
from trustlayer.moderation.domain.errors import ClusterNotFoundError, InvalidInputError
from trustlayer.moderation.domain.sybil import (
    ClusterMember,
    ClusterSort,
    ClusterStatus,
    DetectedCluster,
    InMemorySybilClusterRepository,
    InMemorySybilGraphSource,
    MemberRole,
    SybilCluster,
    SybilClusterRegistry,
    SybilDetector,
    classify_members,
    cluster_hash,
    find_sybil_clusters,
)

from tests.factories import ALICE, BOB, MODERATOR, make_account

CAROL = "did:plc:carol"
DAVE = "did:plc:dave"


class FlakyAccounts(InMemoryAccountDirectory):
    def __init__(self, accounts, failing):
        super().__init__(accounts)
        self.failing = set(failing)

    async def set_banned(self, did):
        if did in self.failing:
            raise ConnectionResetError("identity store unavailable")
        await super().set_banned(did)


def ring_subgraph(dids):
    subgraph = {did: set() for did in dids}
    for source, target in zip(dids, dids[1:] + dids[:1]):
        subgraph[source].add(target)
        subgraph[target].add(source)
    return subgraph


def make_cluster(cluster_id, *, members, internal, external, days_ago=0, status=ClusterStatus.FLAGGED):
    stamp = datetime.now(timezone.utc) - timedelta(days=days_ago)
    return SybilCluster(
        id=cluster_id,
        cluster_hash=cluster_hash([f"did:plc:{cluster_id}:{i}" for i in range(members)]),
        internal_edge_count=internal,
        external_edge_count=external,
        member_count=members,
        detected_at=stamp,
        updated_at=stamp,
        status=status,
    )


def test_cluster_hash_ignores_member_order():
    assert cluster_hash([ALICE, BOB, CAROL]) == cluster_hash([CAROL, ALICE, BOB])
    assert cluster_hash([ALICE, BOB]) != cluster_hash([ALICE, BOB, CAROL])
    assert len(cluster_hash([ALICE])) == 64


def test_find_sybil_clusters_requires_size_and_internal_ratio():
    ring = [ALICE, BOB, CAROL]
    subgraph = ring_subgraph(ring)
    subgraph.update({DAVE: {"did:plc:erin"}, "did:plc:erin": {DAVE}})
    outgoing = {ALICE: [BOB, CAROL], BOB: [CAROL, ALICE], CAROL: [ALICE, "did:plc:outside"]}

    clusters = find_sybil_clusters([ALICE, BOB, CAROL, DAVE, "did:plc:erin", "did:plc:isolated"], subgraph, outgoing)

    assert len(clusters) == 1
    assert sorted(clusters[0].members) == sorted(ring)
    assert clusters[0].internal_edges == 5
    assert clusters[0].external_edges == 1
    assert clusters[0].ratio > 0.8


def test_cluster_at_exact_ratio_threshold_is_not_reported():
    ring = [ALICE, BOB, CAROL]
    outgoing = {ALICE: [BOB, CAROL, BOB, "x1"], BOB: [CAROL, ALICE, CAROL], CAROL: [ALICE, BOB, "x2"]}

    assert find_sybil_clusters(ring, ring_subgraph(ring), outgoing) == []


def test_classify_members_uses_median_degree():
    subgraph = {ALICE: {BOB, CAROL, DAVE}, BOB: {ALICE}, CAROL: {ALICE}, DAVE: {ALICE}}

    roles = classify_members([ALICE, BOB, CAROL, DAVE], subgraph)

    assert roles[ALICE] is MemberRole.CORE
    assert {roles[BOB], roles[CAROL], roles[DAVE]} == {MemberRole.PERIPHERAL}


@pytest.mark.asyncio
async def test_detector_records_clusters_and_skips_dismissed():
    source = InMemorySybilGraphSource()
    for did in (ALICE, BOB, CAROL):
        source.trust_scores[(did, "")] = 0.01
    source.trust_scores[(DAVE, "")] = 0.5
    source.edges.extend(
        [
            (ALICE, BOB, "c"),
            (BOB, CAROL, "c"),
            (CAROL, ALICE, "c"),
            (BOB, ALICE, "c"),
            (DAVE, ALICE, "c"),
        ]
    )
    repo = InMemorySybilClusterRepository()
    registry = SybilClusterRegistry(repo, InMemoryAccountDirectory())
    detector = SybilDetector(source, registry)

    summary = await detector.detect_clusters()

    assert summary.clusters_detected == 1
    assert summary.total_low_trust_dids == 3
    [cluster] = repo.clusters.values()
    assert cluster.member_count == 3
    assert cluster.internal_edge_count == 4
    assert set(repo.members[cluster.id]) == {ALICE, BOB, CAROL}

    await registry.update_status(cluster.id, ClusterStatus.DISMISSED, MODERATOR)
    again = await detector.detect_clusters()

    assert again.clusters_detected == 0
    assert repo.clusters[cluster.id].status is ClusterStatus.DISMISSED


@pytest.mark.asyncio
async def test_detection_without_low_trust_accounts_is_a_no_op():
    detector = SybilDetector(
        InMemorySybilGraphSource(),
        SybilClusterRegistry(InMemorySybilClusterRepository(), InMemoryAccountDirectory()),
    )

    summary = await detector.detect_clusters("did:plc:community")

    assert summary.clusters_detected == 0
    assert summary.duration_ms == 0


@pytest.mark.asyncio
async def test_redetection_refreshes_existing_cluster():
    repo = InMemorySybilClusterRepository()
    registry = SybilClusterRegistry(repo, InMemoryAccountDirectory())
    ring = [ALICE, BOB, CAROL]

    [first] = await registry.record_detected_clusters([DetectedCluster(ring, 6, 0)], ring_subgraph(ring))
    [second] = await registry.record_detected_clusters([DetectedCluster(list(reversed(ring)), 9, 1)], ring_subgraph(ring))

    assert second.id == first.id
    assert second.internal_edge_count == 9
    assert second.detected_at == first.detected_at
    assert len(repo.clusters) == 1


@pytest.mark.asyncio
async def test_ban_propagates_to_members_and_reports_failures():
    accounts = FlakyAccounts(
        [make_account(ALICE, "alice.bsky.social"), make_account(BOB, "bob.bsky.social"), make_account(CAROL, "carol.bsky.social")],
        failing=[BOB],
    )
    repo = InMemorySybilClusterRepository()
    joined = datetime.now(timezone.utc)
    repo.add(
        make_cluster(1, members=3, internal=6, external=0),
        [ClusterMember(1, did, MemberRole.PERIPHERAL, joined) for did in (ALICE, BOB, CAROL)],
    )
    registry = SybilClusterRegistry(repo, accounts)

    report = await registry.update_status(1, ClusterStatus.BANNED, MODERATOR)

    assert report.cluster.status is ClusterStatus.BANNED
    assert report.cluster.reviewed_by == MODERATOR
    assert report.banned == [ALICE, CAROL]
    assert report.failed == [BOB]
    assert accounts.accounts[ALICE].is_banned
    assert not accounts.accounts[BOB].is_banned


@pytest.mark.asyncio
async def test_update_status_validation():
    registry = SybilClusterRegistry(InMemorySybilClusterRepository(), InMemoryAccountDirectory())

    with pytest.raises(InvalidInputError):
        await registry.update_status(1, ClusterStatus.FLAGGED, MODERATOR)
    with pytest.raises(ClusterNotFoundError):
        await registry.update_status(1, ClusterStatus.MONITORING, MODERATOR)
    with pytest.raises(ClusterNotFoundError):
        await registry.get_cluster(1)


@pytest.mark.asyncio
async def test_get_cluster_enriches_members():
    accounts = InMemoryAccountDirectory([make_account(ALICE, "alice.bsky.social")])
    repo = InMemorySybilClusterRepository()
    repo.add(
        make_cluster(4, members=2, internal=2, external=0),
        [ClusterMember(4, ALICE, MemberRole.CORE, datetime.now(timezone.utc)), ClusterMember(4, BOB, MemberRole.PERIPHERAL, datetime.now(timezone.utc))],
    )

    detail = await SybilClusterRegistry(repo, accounts).get_cluster(4)

    by_did = {member.did: member for member in detail.members}
    assert by_did[ALICE].handle == "alice.bsky.social"
    assert by_did[BOB].handle is None


@pytest.mark.asyncio
async def test_list_clusters_sorts_and_rejects_mismatched_cursor():
    repo = InMemorySybilClusterRepository()
    repo.add(make_cluster(1, members=3, internal=9, external=1, days_ago=3))
    repo.add(make_cluster(2, members=8, internal=5, external=5, days_ago=2))
    repo.add(make_cluster(3, members=5, internal=10, external=0, days_ago=1))
    repo.add(make_cluster(4, members=4, internal=4, external=0, status=ClusterStatus.DISMISSED))
    registry = SybilClusterRegistry(repo, InMemoryAccountDirectory())

    by_ratio = await registry.list_clusters(status=ClusterStatus.FLAGGED, sort=ClusterSort.SUSPICION_RATIO, limit=2)
    by_size = await registry.list_clusters(sort=ClusterSort.MEMBER_COUNT)
    newest = await registry.list_clusters(status=ClusterStatus.FLAGGED)
    rest = await registry.list_clusters(
        status=ClusterStatus.FLAGGED, sort=ClusterSort.SUSPICION_RATIO, cursor=by_ratio.cursor, limit=2
    )

    assert [cluster.id for cluster in by_ratio.items] == [3, 1]
    assert [cluster.id for cluster in rest.items] == [2]
    assert [cluster.id for cluster in by_size.items] == [2, 3, 4, 1]
    assert [cluster.id for cluster in newest.items] == [3, 2, 1]
    with pytest.raises(InvalidInputError, match="invalid_cursor"):
        await registry.list_clusters(sort=ClusterSort.MEMBER_COUNT, cursor=by_ratio.cursor)


@pytest.mark.asyncio
async def test_flagged_cluster_peers_and_counts():
    repo = InMemorySybilClusterRepository()
    joined = datetime.now(timezone.utc)
    repo.add(make_cluster(1, members=2, internal=2, external=0), [ClusterMember(1, did, MemberRole.CORE, joined) for did in (ALICE, BOB)])
    repo.add(
        make_cluster(2, members=2, internal=2, external=0, status=ClusterStatus.DISMISSED),
        [ClusterMember(2, did, MemberRole.CORE, joined) for did in (ALICE, CAROL)],
    )

    assert await repo.flagged_cluster_peers(ALICE) == {ALICE, BOB}
    assert await repo.flagged_cluster_peers(CAROL) is None
    assert await SybilClusterRegistry(repo, InMemoryAccountDirectory()).count_flagged() == 1
