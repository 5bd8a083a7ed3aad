import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from trustlayer.moderation.domain.errors import InvalidInputError
from trustlayer.moderation.domain.settings_store import (
    AntiSpamSettings,
    InMemorySettingsRepository,
    SettingsStore,
    load_antispam_defaults,
    normalise_word_filter,
)

from tests.factories import COMMUNITY


class BrokenRedis:
    async def get(self, *args, **kwargs):
        raise RedisConnectionError("redis down")

    async def set(self, *args, **kwargs):
        raise RedisConnectionError("redis down")

    async def delete(self, *args, **kwargs):
        raise RedisConnectionError("redis down")


class FailingRepository(InMemorySettingsRepository):
    async def fetch(self, community_did):
        raise ConnectionRefusedError("postgres unavailable")


class CountingRepository(InMemorySettingsRepository):
    def __init__(self) -> None:
        super().__init__()
        self.fetches = 0

    async def fetch(self, community_did):
        self.fetches += 1
        return await super().fetch(community_did)


@pytest.mark.asyncio
async def test_load_merges_stored_thresholds_over_defaults(fake_redis):
    repo = InMemorySettingsRepository()
    repo.put(COMMUNITY, word_filter=["spam"], burst_post_count=2)
    store = SettingsStore(repo)

    loaded = await store.load(COMMUNITY)

    assert loaded.word_filter == ["spam"]
    assert loaded.burst_post_count == 2
    assert loaded.new_account_days == 7
    cached = json.loads(await fake_redis.get(f"antispam:settings:{COMMUNITY}"))
    assert cached["burst_post_count"] == 2
    assert await fake_redis.ttl(f"antispam:settings:{COMMUNITY}") <= 60


@pytest.mark.asyncio
async def test_second_load_is_served_from_cache(fake_redis):
    repo = CountingRepository()
    repo.put(COMMUNITY, first_post_queue_count=5)
    store = SettingsStore(repo)

    await store.load(COMMUNITY)
    again = await store.load(COMMUNITY)

    assert again.first_post_queue_count == 5
    assert repo.fetches == 1


@pytest.mark.asyncio
async def test_missing_community_uses_defaults(fake_redis):
    store = SettingsStore(InMemorySettingsRepository(), defaults=AntiSpamSettings(word_filter=["viagra"]))

    loaded = await store.load("did:plc:unknown")

    assert loaded.word_filter == ["viagra"]
    assert loaded.trusted_post_threshold == 10


@pytest.mark.asyncio
async def test_word_filter_update_invalidates_cache(fake_redis):
    repo = InMemorySettingsRepository()
    repo.put(COMMUNITY, word_filter=["old"], burst_post_count=4)
    store = SettingsStore(repo)
    await store.load(COMMUNITY)

    saved = await store.update_word_filter(COMMUNITY, ["Casino", "casino", "Free Money"])

    assert saved == ["casino", "free money"]
    assert await fake_redis.get(f"antispam:settings:{COMMUNITY}") is None
    reloaded = await store.load(COMMUNITY)
    assert reloaded.word_filter == ["casino", "free money"]
    assert reloaded.burst_post_count == 4
    assert await store.get_word_filter(COMMUNITY) == ["casino", "free money"]


def test_normalise_word_filter_rejects_bad_input():
    with pytest.raises(InvalidInputError, match="too_many_words"):
        normalise_word_filter([f"w{i}" for i in range(501)])
    with pytest.raises(InvalidInputError, match="invalid_word"):
        normalise_word_filter(["ok", ""])
    with pytest.raises(InvalidInputError, match="invalid_word"):
        normalise_word_filter(["x" * 101])

    assert normalise_word_filter([]) == []


@pytest.mark.asyncio
async def test_redis_outage_falls_through_to_durable_store():
    repo = InMemorySettingsRepository()
    repo.put(COMMUNITY, new_account_days=14)
    store = SettingsStore(repo, BrokenRedis())

    loaded = await store.load(COMMUNITY)
    await store.update_word_filter(COMMUNITY, ["spam"])

    assert loaded.new_account_days == 14
    assert repo.rows[COMMUNITY].word_filter == ["spam"]


@pytest.mark.asyncio
async def test_durable_failure_returns_defaults(fake_redis):
    defaults = AntiSpamSettings(burst_post_count=9)
    store = SettingsStore(FailingRepository(), defaults=defaults)

    loaded = await store.load(COMMUNITY)

    assert loaded.burst_post_count == 9
    assert loaded is not defaults


def test_defaults_load_from_yaml_section(tmp_path):
    path = tmp_path / "antispam.yml"
    path.write_text("antispam:\n  new_account_days: 3\n  word_filter:\n    - casino\n  unknown_key: 1\n", encoding="utf-8")

    defaults = load_antispam_defaults(path)

    assert defaults.new_account_days == 3
    assert defaults.word_filter == ["casino"]
    assert defaults.established_write_rate_per_min == 10


def test_defaults_reject_non_mapping(tmp_path):
    path = tmp_path / "antispam.yml"
    path.write_text("- 1\n- 2\n", encoding="utf-8")

    with pytest.raises(ValueError):
        load_antispam_defaults(path)
