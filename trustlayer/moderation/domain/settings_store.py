"""Per-community anti-spam settings with a cache-first, durable-fallback lookup."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping, Protocol, Sequence

import asyncpg
import yaml
from redis.exceptions import RedisError

from trustlayer.infra.redis import RedisProxy, redis_client
from trustlayer.moderation.domain.errors import InvalidInputError
from trustlayer.obs import metrics

logger = logging.getLogger(__name__)

MAX_FILTER_WORDS = 500
MAX_FILTER_WORD_LENGTH = 100

_DURABLE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


@dataclass(slots=True)
class AntiSpamSettings:
    word_filter: list[str] = field(default_factory=list)
    first_post_queue_count: int = 3
    new_account_days: int = 7
    new_account_write_rate_per_min: int = 3
    established_write_rate_per_min: int = 10
    link_hold_enabled: bool = True
    topic_creation_delay_enabled: bool = True
    burst_post_count: int = 5
    burst_window_minutes: int = 10
    trusted_post_threshold: int = 10

    def merged(self, overrides: Mapping[str, Any] | None) -> "AntiSpamSettings":
        """Return a copy with known, non-null fields taken from ``overrides``."""

        if not overrides:
            return replace(self, word_filter=list(self.word_filter))
        known = {item.name for item in fields(self)}
        values = {key: value for key, value in overrides.items() if key in known and value is not None}
        merged = replace(self, **values)
        merged.word_filter = [str(word) for word in merged.word_filter]
        return merged

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class StoredSettings:
    """Raw durable row: the word list and the threshold document."""

    word_filter: list[str] | None
    thresholds: Mapping[str, Any]


class SettingsRepository(Protocol):
    async def fetch(self, community_did: str) -> StoredSettings | None:
        ...

    async def save_word_filter(self, community_did: str, words: Sequence[str]) -> None:
        ...


def load_antispam_defaults(path: str | Path) -> AntiSpamSettings:
    """Read deployment-wide defaults from a YAML mapping."""

    with open(path, "r", encoding="utf-8") as handle:
        loaded = yaml.safe_load(handle) or {}
    section = loaded.get("antispam", loaded) if isinstance(loaded, dict) else loaded
    if not isinstance(section, dict):
        raise ValueError("anti-spam defaults must be a mapping")
    return AntiSpamSettings().merged(section)


def normalise_word_filter(words: Sequence[str]) -> list[str]:
    """Validate, lowercase and de-duplicate (first occurrence wins)."""

    if len(words) > MAX_FILTER_WORDS:
        raise InvalidInputError("too_many_words")
    seen: dict[str, None] = {}
    for word in words:
        if not isinstance(word, str) or not (1 <= len(word) <= MAX_FILTER_WORD_LENGTH):
            raise InvalidInputError("invalid_word")
        seen.setdefault(word.lower(), None)
    return list(seen)


class SettingsStore:
    """Two-tier settings lookup: Redis first, then the durable store.

    Cache problems are logged and never surface to callers.
    """

    def __init__(
        self,
        repository: SettingsRepository,
        redis: RedisProxy | None = None,
        *,
        ttl_seconds: int = 60,
        defaults: AntiSpamSettings | None = None,
        namespace: str = "antispam:settings:",
    ) -> None:
        self._repo = repository
        self._redis = redis or redis_client
        self._ttl = max(1, ttl_seconds)
        self._defaults = defaults or AntiSpamSettings()
        self._namespace = namespace

    def _key(self, community_did: str) -> str:
        return f"{self._namespace}{community_did}"

    async def load(self, community_did: str) -> AntiSpamSettings:
        cached = await self._read_cache(community_did)
        if cached is not None:
            metrics.SETTINGS_CACHE.labels(result="hit").inc()
            return cached
        metrics.SETTINGS_CACHE.labels(result="miss").inc()
        resolved = await self._read_durable(community_did)
        await self._write_cache(community_did, resolved)
        return resolved

    async def get_word_filter(self, community_did: str) -> list[str]:
        stored = await self._repo.fetch(community_did)
        if stored is None or stored.word_filter is None:
            return list(self._defaults.word_filter)
        return list(stored.word_filter)

    async def update_word_filter(self, community_did: str, words: Sequence[str]) -> list[str]:
        normalised = normalise_word_filter(words)
        await self._repo.save_word_filter(community_did, normalised)
        await self.invalidate(community_did)
        logger.info("word_filter_updated", extra={"community_did": community_did, "word_count": len(normalised)})
        return normalised

    async def invalidate(self, community_did: str) -> None:
        try:
            await self._redis.delete(self._key(community_did))
        except (RedisError, OSError):
            logger.warning("antispam_settings_invalidate_failed", extra={"community_did": community_did}, exc_info=True)

    async def _read_cache(self, community_did: str) -> AntiSpamSettings | None:
        try:
            raw = await self._redis.get(self._key(community_did))
        except (RedisError, OSError):
            logger.warning("antispam_settings_cache_read_failed", extra={"community_did": community_did}, exc_info=True)
            metrics.SETTINGS_CACHE.labels(result="error").inc()
            return None
        if not raw:
            return None
        try:
            decoded = json.loads(raw)
        except (TypeError, ValueError):
            return None
        if not isinstance(decoded, dict):
            return None
        return AntiSpamSettings().merged(decoded)

    async def _read_durable(self, community_did: str) -> AntiSpamSettings:
        try:
            stored = await self._repo.fetch(community_did)
        except _DURABLE_ERRORS:
            logger.error("antispam_settings_load_failed", extra={"community_did": community_did}, exc_info=True)
            return self._defaults.merged(None)
        if stored is None:
            return self._defaults.merged(None)
        overrides = dict(stored.thresholds or {})
        if stored.word_filter is not None:
            overrides["word_filter"] = list(stored.word_filter)
        return self._defaults.merged(overrides)

    async def _write_cache(self, community_did: str, value: AntiSpamSettings) -> None:
        try:
            await self._redis.set(self._key(community_did), json.dumps(value.to_dict()), ex=self._ttl)
        except (RedisError, OSError):
            logger.warning("antispam_settings_cache_write_failed", extra={"community_did": community_did}, exc_info=True)


class InMemorySettingsRepository(SettingsRepository):
    def __init__(self) -> None:
        self.rows: dict[str, StoredSettings] = {}

    def put(self, community_did: str, *, word_filter: list[str] | None = None, **thresholds: Any) -> None:
        self.rows[community_did] = StoredSettings(word_filter=word_filter, thresholds=thresholds)

    async def fetch(self, community_did: str) -> StoredSettings | None:
        return self.rows.get(community_did)

    async def save_word_filter(self, community_did: str, words: Sequence[str]) -> None:
        existing = self.rows.get(community_did)
        thresholds = existing.thresholds if existing else {}
        self.rows[community_did] = StoredSettings(word_filter=list(words), thresholds=thresholds)
