import pytest

from trustlayer.api import ops
from trustlayer.moderation.domain.reputation import ContentCounts
from trustlayer.moderation.domain.trust import AccountTrust

from tests.factories import ALICE, COMMUNITY, MODERATOR


@pytest.mark.asyncio
async def test_reputation_is_public_and_itemised(api_client, moderation_env):
    moderation_env.stats.counts[ALICE] = ContentCounts(topics=4, replies=5, reactions_received=10, community_count=3)
    moderation_env.trust_graph.scores[ALICE] = 1.0

    resp = await api_client.get(f"/api/mod/v1/reputation/{ALICE}")

    assert resp.status_code == 200
    body = resp.json()
    assert body["handle"] == "alice.bsky.social"
    assert body["reputation"] == 12
    assert body["community_count"] == 3
    assert body["breakdown"] == {
        "topic_count": 4,
        "reply_count": 5,
        "reactions_received": 10,
        "trust_score": 1.0,
        "pds_trust_factor": 0.3,
        "cluster_diversity_factor": 1.0,
    }


@pytest.mark.asyncio
async def test_reputation_unknown_account(api_client):
    resp = await api_client.get("/api/mod/v1/reputation/did:plc:ghost")

    assert resp.status_code == 404
    assert resp.json()["detail"] == "account_not_found"


@pytest.mark.asyncio
async def test_trust_status(api_client, moderation_env):
    moderation_env.trust.put(AccountTrust(did=ALICE, community_did=COMMUNITY, approved_post_count=2))

    alice = await api_client.get(f"/api/mod/v1/trust-status/{ALICE}", params={"community": COMMUNITY})
    moderator = await api_client.get(f"/api/mod/v1/trust-status/{MODERATOR}", params={"community": COMMUNITY})
    missing_community = await api_client.get(f"/api/mod/v1/trust-status/{ALICE}")

    assert alice.json()["approved_post_count"] == 2
    assert alice.json()["is_trusted"] is False
    assert alice.json()["is_seed"] is False
    assert moderator.json()["is_staff"] is True
    assert moderator.json()["is_seed"] is True
    assert missing_community.status_code == 422


@pytest.mark.asyncio
async def test_health_and_metrics(api_client, monkeypatch):
    async def no_pool():
        raise ConnectionRefusedError("postgres unavailable")

    monkeypatch.setattr(ops, "get_pool", no_pool)

    live = await api_client.get("/health/live")
    ready = await api_client.get("/health/ready")
    metrics = await api_client.get("/metrics")

    assert live.json()["status"] == "ok"
    assert ready.status_code == 503
    assert ready.json()["checks"] == {"postgres": "error", "redis": "ok"}
    assert metrics.status_code == 200
    assert "trustlayer_antispam_decisions_total" in metrics.text
