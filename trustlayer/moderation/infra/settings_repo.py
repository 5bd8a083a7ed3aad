"""PostgreSQL-backed per-community anti-spam settings."""

from __future__ import annotations

from typing import Sequence

import asyncpg

from trustlayer.moderation.domain.settings_store import SettingsRepository, StoredSettings


class PostgresSettingsRepository(SettingsRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def fetch(self, community_did: str) -> StoredSettings | None:
        row = await self._pool.fetchrow(
            "SELECT word_filter, moderation_thresholds FROM community_settings WHERE community_did = $1",
            community_did,
        )
        if row is None:
            return None
        words = row["word_filter"]
        return StoredSettings(
            word_filter=[str(word) for word in words] if isinstance(words, list) else None,
            thresholds=row["moderation_thresholds"] or {},
        )

    async def save_word_filter(self, community_did: str, words: Sequence[str]) -> None:
        await self._pool.execute(
            """
            INSERT INTO community_settings (community_did, word_filter, updated_at)
            VALUES ($1, $2, now())
            ON CONFLICT (community_did) DO UPDATE SET word_filter = EXCLUDED.word_filter, updated_at = now()
            """,
            community_did,
            list(words),
        )
