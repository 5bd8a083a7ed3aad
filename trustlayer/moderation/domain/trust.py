"""Per-community trust accounting and trust seed administration."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable, Protocol

from trustlayer.moderation.domain.accounts import STAFF_ROLES, AccountDirectory
from trustlayer.moderation.domain.errors import (
    AccountNotFoundError,
    InvalidInputError,
    TrustSeedConflictError,
    TrustSeedNotFoundError,
)
from trustlayer.moderation.domain.pagination import Page, clamp_limit, paginate_desc
from trustlayer.moderation.domain.scope import GLOBAL, Scope

logger = logging.getLogger(__name__)

IMPLICIT_SEED_ADDED_BY = "system"
MAX_SEED_REASON_LENGTH = 500


@dataclass(slots=True)
class AccountTrust:
    did: str
    community_did: str
    approved_post_count: int = 0
    is_trusted: bool = False
    trusted_at: datetime | None = None
    updated_at: datetime | None = None


def apply_approval(
    current: AccountTrust | None,
    *,
    did: str,
    community_did: str,
    threshold: int,
    now: datetime,
) -> AccountTrust:
    """Count one approved post and promote once the threshold is reached.

    Promotion is one-way: ``trusted_at`` is stamped on the first flip only.
    """

    record = current or AccountTrust(did=did, community_did=community_did)
    count = record.approved_post_count + 1
    promote = not record.is_trusted and count >= threshold
    return replace(
        record,
        approved_post_count=count,
        is_trusted=record.is_trusted or promote,
        trusted_at=now if promote else record.trusted_at,
        updated_at=now,
    )


class TrustRepository(Protocol):
    async def get(self, did: str, community_did: str) -> AccountTrust | None:
        ...


class InMemoryTrustRepository(TrustRepository):
    def __init__(self) -> None:
        self.records: dict[tuple[str, str], AccountTrust] = {}

    def put(self, record: AccountTrust) -> AccountTrust:
        self.records[(record.did, record.community_did)] = record
        return record

    async def get(self, did: str, community_did: str) -> AccountTrust | None:
        return self.records.get((did, community_did))

    def record_approval(self, did: str, community_did: str, *, threshold: int, now: datetime) -> tuple[AccountTrust, bool]:
        current = self.records.get((did, community_did))
        updated = apply_approval(current, did=did, community_did=community_did, threshold=threshold, now=now)
        self.records[(did, community_did)] = updated
        promoted = updated.is_trusted and not (current.is_trusted if current else False)
        return updated, promoted


@dataclass(slots=True)
class TrustSeed:
    id: int
    did: str
    scope: Scope
    added_by: str
    reason: str | None
    created_at: datetime
    implicit: bool = False
    handle: str | None = None
    display_name: str | None = None


class TrustSeedRepository(Protocol):
    async def list_explicit(self, *, cursor: str | None, limit: int) -> Page[TrustSeed]:
        ...

    async def seeded_dids(self) -> set[str]:
        ...

    async def create(self, *, did: str, scope: Scope, added_by: str, reason: str | None, created_at: datetime) -> TrustSeed:
        """Insert a seed; raises ``TrustSeedConflictError`` when (did, scope) already exists."""

    async def delete(self, seed_id: int) -> bool:
        ...

    async def has_seed(self, did: str, scope: Scope) -> bool:
        ...


class InMemoryTrustSeedRepository(TrustSeedRepository):
    def __init__(self) -> None:
        self.seeds: dict[int, TrustSeed] = {}
        self._next_id = 1

    async def list_explicit(self, *, cursor: str | None, limit: int) -> Page[TrustSeed]:
        return paginate_desc(
            list(self.seeds.values()),
            limit=limit,
            cursor=cursor,
            sort_field="created_at",
            key=lambda seed: (seed.created_at, seed.id),
        )

    async def seeded_dids(self) -> set[str]:
        return {seed.did for seed in self.seeds.values()}

    async def create(self, *, did: str, scope: Scope, added_by: str, reason: str | None, created_at: datetime) -> TrustSeed:
        if any(seed.did == did and seed.scope == scope for seed in self.seeds.values()):
            raise TrustSeedConflictError(did)
        seed = TrustSeed(
            id=self._next_id,
            did=did,
            scope=scope,
            added_by=added_by,
            reason=reason,
            created_at=created_at,
        )
        self.seeds[seed.id] = seed
        self._next_id += 1
        return seed

    async def delete(self, seed_id: int) -> bool:
        return self.seeds.pop(seed_id, None) is not None

    async def has_seed(self, did: str, scope: Scope) -> bool:
        return any(seed.did == did and seed.scope in (scope, GLOBAL) for seed in self.seeds.values())


RecomputeTrigger = Callable[[], Awaitable[object]]


class TrustSeedService:
    """Explicit seed rows merged with staff accounts computed at read time."""

    def __init__(
        self,
        repository: TrustSeedRepository,
        accounts: AccountDirectory,
        *,
        trigger_recompute: RecomputeTrigger | None = None,
        staff_roles: Iterable[str] = STAFF_ROLES,
    ) -> None:
        self._repo = repository
        self._accounts = accounts
        self._trigger = trigger_recompute
        self._staff_roles = frozenset(role.lower() for role in staff_roles)

    async def list_seeds(self, *, cursor: str | None = None, limit: int | None = None) -> Page[TrustSeed]:
        """Explicit seeds newest first; implicit staff seeds ride along on the first page."""

        page = await self._repo.list_explicit(cursor=cursor, limit=clamp_limit(limit))
        for seed in page.items:
            if seed.handle is None:
                account = await self._accounts.get_account(seed.did)
                if account is not None:
                    seed.handle = account.handle
                    seed.display_name = account.display_name
        if cursor:
            return page
        explicit_dids = await self._repo.seeded_dids()
        implicit = [
            TrustSeed(
                id=0,
                did=account.did,
                scope=GLOBAL,
                added_by=IMPLICIT_SEED_ADDED_BY,
                reason=f"Implicit trust seed ({account.role})",
                created_at=account.first_seen_at,
                implicit=True,
                handle=account.handle,
                display_name=account.display_name,
            )
            for account in await self._accounts.list_staff()
            if account.did not in explicit_dids and account.is_staff(self._staff_roles)
        ]
        return Page(items=page.items + implicit, cursor=page.cursor)

    async def create_seed(self, did: str, scope: Scope, *, added_by: str, reason: str | None = None) -> TrustSeed:
        if not did:
            raise InvalidInputError("did_required")
        if reason is not None and len(reason) > MAX_SEED_REASON_LENGTH:
            raise InvalidInputError("reason_too_long")
        account = await self._accounts.get_account(did)
        if account is None:
            raise AccountNotFoundError(did)
        seed = await self._repo.create(
            did=did,
            scope=scope,
            added_by=added_by,
            reason=reason,
            created_at=datetime.now(timezone.utc),
        )
        seed.handle = account.handle
        seed.display_name = account.display_name
        logger.info("trust_seed_added", extra={"seed_id": seed.id, "did": did, "added_by": added_by})
        await self._recompute()
        return seed

    async def delete_seed(self, seed_id: int) -> None:
        removed = await self._repo.delete(seed_id)
        if not removed:
            raise TrustSeedNotFoundError(str(seed_id))
        logger.info("trust_seed_removed", extra={"seed_id": seed_id})
        await self._recompute()

    async def is_seed(self, did: str, scope: Scope) -> bool:
        if await self._repo.has_seed(did, scope):
            return True
        account = await self._accounts.get_account(did)
        return account is not None and account.is_staff(self._staff_roles)

    async def _recompute(self) -> None:
        if self._trigger is not None:
            await self._trigger()
