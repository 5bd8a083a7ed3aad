import pytest

from trustlayer.moderation.domain.trust import AccountTrust

from tests.factories import ALICE, BOB, COMMUNITY, MODERATOR


@pytest.mark.asyncio
async def test_new_account_with_link_is_held_and_queued(api_client, moderation_env):
    resp = await api_client.post(
        "/api/mod/v1/antispam/check",
        json={
            "community_did": COMMUNITY,
            "content_type": "reply",
            "content": "hello, see https://example.com",
            "content_uri": "at://bob/reply/1",
        },
        headers={"X-Actor-Did": BOB},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["held"] is True
    assert [hold["reason"] for hold in body["reasons"]] == ["first_post", "link_hold"]
    assert len(body["queue_item_ids"]) == 2
    queued = [moderation_env.queue.items[item_id] for item_id in body["queue_item_ids"]]
    assert {item.content_uri for item in queued} == {"at://bob/reply/1"}


@pytest.mark.asyncio
async def test_word_filter_match_reports_words(api_client, moderation_env):
    moderation_env.settings.put(COMMUNITY, word_filter=["casino"])
    moderation_env.trust.put(AccountTrust(did=ALICE, community_did=COMMUNITY, approved_post_count=4))

    resp = await api_client.post(
        "/api/mod/v1/antispam/check",
        json={"community_did": COMMUNITY, "content_type": "topic", "title": "Casino night", "content": "come along"},
        headers={"X-Actor-Did": ALICE},
    )

    body = resp.json()
    assert body["held"] is True
    assert body["reasons"] == [{"reason": "word_filter", "matched_words": ["casino"]}]
    assert body["queue_item_ids"] == []


@pytest.mark.asyncio
async def test_staff_and_trusted_authors_publish_immediately(api_client, moderation_env):
    moderation_env.trust.put(AccountTrust(did=BOB, community_did=COMMUNITY, approved_post_count=10, is_trusted=True))
    payload = {"community_did": COMMUNITY, "content_type": "reply", "content": "https://example.com"}

    staff = await api_client.post("/api/mod/v1/antispam/check", json=payload, headers={"X-Actor-Did": MODERATOR})
    trusted = await api_client.post("/api/mod/v1/antispam/check", json=payload, headers={"X-Actor-Did": BOB})

    assert staff.json() == {"held": False, "reasons": [], "queue_item_ids": []}
    assert trusted.json()["held"] is False


@pytest.mark.asyncio
async def test_check_validates_body(api_client):
    resp = await api_client.post(
        "/api/mod/v1/antispam/check",
        json={"community_did": COMMUNITY, "content_type": "poll", "content": "x"},
        headers={"X-Actor-Did": BOB},
    )

    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_first_topic_is_held_for_topic_delay(api_client):
    resp = await api_client.post(
        "/api/mod/v1/antispam/check",
        json={"community_did": COMMUNITY, "content_type": "topic", "title": "Hello", "content": "first topic"},
        headers={"X-Actor-Did": BOB},
    )

    assert [hold["reason"] for hold in resp.json()["reasons"]] == ["first_post", "topic_delay"]


@pytest.mark.asyncio
async def test_write_rate_limit_returns_429(api_client, moderation_env):
    moderation_env.settings.put(COMMUNITY, new_account_write_rate_per_min=1)
    payload = {"community_did": COMMUNITY, "content_type": "reply", "content": "hi"}

    first = await api_client.post("/api/mod/v1/antispam/check", json=payload, headers={"X-Actor-Did": BOB})
    second = await api_client.post("/api/mod/v1/antispam/check", json=payload, headers={"X-Actor-Did": BOB})

    assert first.status_code == 200
    assert second.status_code == 429
    assert second.json()["detail"] == "write_rate_limited"
    assert second.headers["Retry-After"] == "60"
