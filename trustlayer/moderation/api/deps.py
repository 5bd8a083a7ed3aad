"""Shared request dependencies and error translation for moderation routers."""

from __future__ import annotations

from typing import Generic, TypeVar

from fastapi import Depends, Header, HTTPException, status
from pydantic import BaseModel, Field

from trustlayer.moderation.domain.accounts import AccountRecord
from trustlayer.moderation.domain.container import get_accounts, get_staff_roles
from trustlayer.moderation.domain.errors import (
    AccountNotFoundError,
    BehavioralFlagNotFoundError,
    ClusterNotFoundError,
    InvalidInputError,
    ModerationWorkflowError,
    NotFoundError,
    QueueItemConflictError,
    QueueItemNotFoundError,
    RecomputeCooldownError,
    TrustSeedConflictError,
    TrustSeedNotFoundError,
    WriteRateLimitedError,
)

ItemT = TypeVar("ItemT")

_NOT_FOUND_DETAILS: dict[type[NotFoundError], str] = {
    QueueItemNotFoundError: "queue_item_not_found",
    TrustSeedNotFoundError: "trust_seed_not_found",
    ClusterNotFoundError: "cluster_not_found",
    BehavioralFlagNotFoundError: "flag_not_found",
    AccountNotFoundError: "account_not_found",
}


class PageOut(BaseModel, Generic[ItemT]):
    items: list[ItemT] = Field(default_factory=list)
    cursor: str | None = None


async def get_actor_did(x_actor_did: str | None = Header(default=None)) -> str:
    """Actor identity is authenticated upstream and forwarded in ``X-Actor-Did``."""
    if not x_actor_did or not x_actor_did.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="actor_required")
    return x_actor_did.strip()


async def get_staff_actor(actor_did: str = Depends(get_actor_did)) -> AccountRecord:
    account = await get_accounts().get_account(actor_did)
    if account is None or not account.is_staff(get_staff_roles()):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="staff_only")
    return account


def to_http_error(exc: ModerationWorkflowError) -> HTTPException:
    if isinstance(exc, RecomputeCooldownError):
        return HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="recompute_cooldown",
            headers={"Retry-After": str(exc.retry_after)},
        )
    if isinstance(exc, WriteRateLimitedError):
        return HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="write_rate_limited",
            headers={"Retry-After": str(exc.retry_after)},
        )
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=_NOT_FOUND_DETAILS.get(type(exc), "not_found"))
    if isinstance(exc, QueueItemConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail="queue_item_already_reviewed")
    if isinstance(exc, TrustSeedConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail="trust_seed_exists")
    if isinstance(exc, InvalidInputError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc) or "invalid_input")
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc) or "moderation_error")
