import pytest

from trustlayer.moderation.domain.accounts import InMemoryAccountDirectory
from trustlayer.moderation.domain.anti_spam import (
    AntiSpamGate,
    AntiSpamResult,
    QueueHold,
    burst_key,
    check_word_filter,
    contains_urls,
)
from trustlayer.moderation.domain.errors import WriteRateLimitedError
from trustlayer.moderation.domain.queue import ContentType, InMemoryQueueRepository, ModerationQueue, QueueReason
from trustlayer.moderation.domain.settings_store import InMemorySettingsRepository, SettingsStore
from trustlayer.moderation.domain.trust import AccountTrust, InMemoryTrustRepository

from tests.factories import ALICE, BOB, COMMUNITY, MODERATOR, make_account


def build_gate(**thresholds):
    accounts = InMemoryAccountDirectory(
        [
            make_account(ALICE, "alice.bsky.social", days_old=30),
            make_account(BOB, "bob.bsky.social", days_old=1),
            make_account(MODERATOR, "mod.forum.example", role="moderator"),
        ]
    )
    trust = InMemoryTrustRepository()
    settings_repo = InMemorySettingsRepository()
    settings_repo.put(COMMUNITY, word_filter=thresholds.pop("word_filter", ["casino", "free money"]), **thresholds)
    store = SettingsStore(settings_repo)
    queue_repo = InMemoryQueueRepository(trust=trust)
    gate = AntiSpamGate(
        settings_store=store,
        trust=trust,
        accounts=accounts,
        queue=ModerationQueue(queue_repo, store),
    )
    return gate, trust, queue_repo, store


def test_word_filter_matches_whole_words_case_insensitively():
    words = ["casino", "free money", "c++"]

    assert check_word_filter("Visit the CASINO tonight", None, words) == ["casino"]
    assert check_word_filter("casinos are fine", None, words) == []
    assert check_word_filter("get FREE   money", None, words) == []
    assert check_word_filter("body", "Free Money inside", words) == ["free money"]


def test_contains_urls_detects_schemes_and_www():
    assert contains_urls("see https://example.com/x")
    assert contains_urls("see www.example.com")
    assert not contains_urls("plain text only")


@pytest.mark.asyncio
async def test_trusted_account_bypasses_every_check(fake_redis):
    gate, trust, _, _ = build_gate(burst_post_count=1)
    trust.put(AccountTrust(did=ALICE, community_did=COMMUNITY, approved_post_count=12, is_trusted=True))

    result = await gate.run_anti_spam_checks(ALICE, COMMUNITY, ContentType.REPLY, "casino https://spam.example")

    assert result == AntiSpamResult(held=False, reasons=[])
    assert await fake_redis.exists(burst_key(COMMUNITY, ALICE)) == 0


@pytest.mark.asyncio
async def test_staff_bypass_without_trust_record(fake_redis):
    gate, _, _, _ = build_gate()

    result = await gate.run_anti_spam_checks(MODERATOR, COMMUNITY, ContentType.TOPIC, "casino", title="free money")

    assert not result.held
    assert await fake_redis.exists(burst_key(COMMUNITY, MODERATOR)) == 0


@pytest.mark.asyncio
async def test_new_account_gets_first_post_and_link_holds():
    gate, _, _, _ = build_gate()

    result = await gate.run_anti_spam_checks(BOB, COMMUNITY, ContentType.REPLY, "hello www.example.com")

    assert result.held
    assert result.reason_codes() == ["first_post", "link_hold"]


@pytest.mark.asyncio
async def test_word_filter_applies_to_established_accounts():
    gate, trust, _, _ = build_gate()
    trust.put(AccountTrust(did=ALICE, community_did=COMMUNITY, approved_post_count=4))

    result = await gate.run_anti_spam_checks(
        ALICE, COMMUNITY, ContentType.TOPIC, "a link https://x.example", title="Casino night"
    )

    assert result.reasons == [QueueHold(QueueReason.WORD_FILTER, matched_words=["casino"])]


@pytest.mark.asyncio
async def test_recent_first_seen_keeps_account_new_despite_approvals():
    gate, trust, _, _ = build_gate()
    trust.put(AccountTrust(did=BOB, community_did=COMMUNITY, approved_post_count=1))

    result = await gate.run_anti_spam_checks(BOB, COMMUNITY, ContentType.REPLY, "plain")

    assert result.reason_codes() == ["first_post"]


@pytest.mark.asyncio
async def test_zero_new_account_days_disables_new_account_holds():
    gate, _, _, _ = build_gate(new_account_days=0)

    result = await gate.run_anti_spam_checks(BOB, COMMUNITY, ContentType.REPLY, "see https://example.com")

    assert not result.held


@pytest.mark.asyncio
async def test_first_post_hold_disabled_by_zero_count():
    gate, _, _, _ = build_gate(first_post_queue_count=0, link_hold_enabled=False)

    result = await gate.run_anti_spam_checks(BOB, COMMUNITY, ContentType.REPLY, "see https://example.com")

    assert not result.held


@pytest.mark.asyncio
async def test_burst_hold_after_window_fills():
    gate, trust, _, _ = build_gate(burst_post_count=2)
    trust.put(AccountTrust(did=ALICE, community_did=COMMUNITY, approved_post_count=5))

    outcomes = [await gate.run_anti_spam_checks(ALICE, COMMUNITY, ContentType.REPLY, "hi") for _ in range(3)]

    assert [outcome.reason_codes() for outcome in outcomes] == [[], [], ["burst"]]


@pytest.mark.asyncio
async def test_write_rate_limit_uses_new_and_established_budgets():
    gate, _, _, store = build_gate(new_account_write_rate_per_min=1, established_write_rate_per_min=2)
    settings = await store.load(COMMUNITY)

    assert not await gate.check_write_rate_limit(BOB, COMMUNITY, True, settings)
    assert await gate.check_write_rate_limit(BOB, COMMUNITY, True, settings)

    assert not await gate.check_write_rate_limit(ALICE, COMMUNITY, False, settings)
    assert not await gate.check_write_rate_limit(ALICE, COMMUNITY, False, settings)
    assert await gate.check_write_rate_limit(ALICE, COMMUNITY, False, settings)


@pytest.mark.asyncio
async def test_can_create_topic_requires_an_approved_post():
    gate, trust, _, store = build_gate()
    settings = await store.load(COMMUNITY)

    assert not await gate.can_create_topic(BOB, COMMUNITY, settings)
    trust.put(AccountTrust(did=BOB, community_did=COMMUNITY, approved_post_count=1))
    assert await gate.can_create_topic(BOB, COMMUNITY, settings)


@pytest.mark.asyncio
async def test_can_create_topic_when_delay_disabled():
    gate, _, _, store = build_gate(topic_creation_delay_enabled=False)

    assert await gate.can_create_topic(BOB, COMMUNITY, await store.load(COMMUNITY))


@pytest.mark.asyncio
async def test_enqueue_held_writes_one_item_per_reason():
    gate, _, queue_repo, _ = build_gate()
    result = await gate.run_anti_spam_checks(BOB, COMMUNITY, ContentType.REPLY, "casino at https://x.example")

    items = await gate.enqueue_held("at://bob/reply/1", ContentType.REPLY, BOB, COMMUNITY, result)

    assert [item.queue_reason for item in items] == [QueueReason.WORD_FILTER, QueueReason.FIRST_POST, QueueReason.LINK_HOLD]
    assert items[0].matched_words == ["casino"]
    assert len(queue_repo.items) == 3


@pytest.mark.asyncio
async def test_screen_submission_rate_limits_before_checking(fake_redis):
    gate, _, _, _ = build_gate(new_account_write_rate_per_min=1)

    await gate.screen_submission(BOB, COMMUNITY, ContentType.REPLY, "hello")
    with pytest.raises(WriteRateLimitedError) as excinfo:
        await gate.screen_submission(BOB, COMMUNITY, ContentType.REPLY, "hello again")

    assert excinfo.value.retry_after == 60
    assert await fake_redis.zcard(burst_key(COMMUNITY, BOB)) == 1


@pytest.mark.asyncio
async def test_screen_submission_adds_topic_delay_for_new_topics(fake_redis):
    gate, _, _, _ = build_gate()

    topic = await gate.screen_submission(BOB, COMMUNITY, ContentType.TOPIC, "hello", title="Intro")
    staff_topic = await gate.screen_submission(MODERATOR, COMMUNITY, ContentType.TOPIC, "hello", title="Rules")

    assert topic.reason_codes() == ["first_post", "topic_delay"]
    assert staff_topic.held is False
    assert not await fake_redis.exists(f"antispam:rate:{COMMUNITY}:{MODERATOR}")
