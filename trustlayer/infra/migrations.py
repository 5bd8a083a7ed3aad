"""Apply the bundled SQL migrations in filename order."""

from __future__ import annotations

import logging
from pathlib import Path

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).with_name("sql")


async def apply_migrations(pool: asyncpg.pool.Pool, directory: Path = MIGRATIONS_DIR) -> list[str]:
	applied: list[str] = []
	async with pool.acquire() as conn:
		for path in sorted(directory.glob("*.sql")):
			async with conn.transaction():
				await conn.execute(path.read_text(encoding="utf-8"))
			logger.info("migration_applied", extra={"migration": path.name})
			applied.append(path.name)
	return applied
