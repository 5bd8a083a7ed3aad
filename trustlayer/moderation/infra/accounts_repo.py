"""Account directory over the ``users`` table."""

from __future__ import annotations

from typing import Iterable, Sequence

import asyncpg

from trustlayer.moderation.domain.accounts import STAFF_ROLES, AccountDirectory, AccountRecord

_COLUMNS = "did, handle, display_name, role, is_banned, first_seen_at"


def _row_to_account(row: asyncpg.Record) -> AccountRecord:
    return AccountRecord(
        did=str(row["did"]),
        handle=str(row["handle"]),
        role=str(row["role"]),
        first_seen_at=row["first_seen_at"],
        display_name=row["display_name"],
        is_banned=bool(row["is_banned"]),
    )


class PostgresAccountDirectory(AccountDirectory):
    def __init__(self, pool: asyncpg.Pool, *, staff_roles: Iterable[str] = STAFF_ROLES) -> None:
        self._pool = pool
        self._staff_roles = sorted({role.lower() for role in staff_roles})

    async def get_account(self, did: str) -> AccountRecord | None:
        row = await self._pool.fetchrow(f"SELECT {_COLUMNS} FROM users WHERE did = $1", did)
        return _row_to_account(row) if row else None

    async def list_staff(self) -> Sequence[AccountRecord]:
        rows = await self._pool.fetch(
            f"SELECT {_COLUMNS} FROM users WHERE lower(role) = ANY($1::text[]) ORDER BY first_seen_at",
            self._staff_roles,
        )
        return [_row_to_account(row) for row in rows]

    async def set_banned(self, did: str) -> None:
        await self._pool.execute("UPDATE users SET is_banned = TRUE WHERE did = $1", did)
