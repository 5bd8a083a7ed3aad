"""Read access to account metadata owned by the identity layer."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Iterable, Protocol, Sequence

STAFF_ROLES: frozenset[str] = frozenset({"moderator", "admin"})


@dataclass(slots=True)
class AccountRecord:
    did: str
    handle: str
    role: str
    first_seen_at: datetime
    display_name: str | None = None
    is_banned: bool = False

    def is_staff(self, staff_roles: Iterable[str] = STAFF_ROLES) -> bool:
        return self.role.lower() in set(staff_roles)


class AccountDirectory(Protocol):
    """Account lookups; only ``set_banned`` writes."""

    async def get_account(self, did: str) -> AccountRecord | None:
        ...

    async def list_staff(self) -> Sequence[AccountRecord]:
        ...

    async def set_banned(self, did: str) -> None:
        ...


def pds_host_for_handle(handle: str) -> str:
    """Home-service host for a handle: ``alice.bsky.social`` -> ``bsky.social``."""

    parts = handle.split(".")
    if len(parts) > 1:
        return ".".join(parts[1:])
    return handle


class InMemoryAccountDirectory(AccountDirectory):
    def __init__(self, accounts: Iterable[AccountRecord] = ()) -> None:
        self.accounts: dict[str, AccountRecord] = {account.did: account for account in accounts}

    def add(self, account: AccountRecord) -> AccountRecord:
        self.accounts[account.did] = account
        return account

    async def get_account(self, did: str) -> AccountRecord | None:
        return self.accounts.get(did)

    async def list_staff(self) -> Sequence[AccountRecord]:
        return [account for account in self.accounts.values() if account.is_staff()]

    async def set_banned(self, did: str) -> None:
        account = self.accounts.get(did)
        if account is not None:
            self.accounts[did] = replace(account, is_banned=True)
