"""Admin endpoints for a community's word filter."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from trustlayer.moderation.api.deps import get_staff_actor, to_http_error
from trustlayer.moderation.domain.accounts import AccountRecord
from trustlayer.moderation.domain.container import get_settings_store
from trustlayer.moderation.domain.errors import ModerationWorkflowError
from trustlayer.moderation.domain.settings_store import SettingsStore

router = APIRouter(prefix="/api/mod/v1/admin/communities", tags=["moderation-admin-word-filter"])


class WordFilterIn(BaseModel):
    words: list[str]


class WordFilterOut(BaseModel):
    community_did: str
    words: list[str]


def get_settings_store_dep() -> SettingsStore:
    return get_settings_store()


@router.get("/{community_did}/word-filter", response_model=WordFilterOut)
async def get_word_filter(
    community_did: str,
    _: AccountRecord = Depends(get_staff_actor),
    store: SettingsStore = Depends(get_settings_store_dep),
) -> WordFilterOut:
    return WordFilterOut(community_did=community_did, words=await store.get_word_filter(community_did))


@router.put("/{community_did}/word-filter", response_model=WordFilterOut)
async def update_word_filter(
    community_did: str,
    body: WordFilterIn,
    _: AccountRecord = Depends(get_staff_actor),
    store: SettingsStore = Depends(get_settings_store_dep),
) -> WordFilterOut:
    try:
        words = await store.update_word_filter(community_did, body.words)
    except ModerationWorkflowError as exc:
        raise to_http_error(exc) from exc
    return WordFilterOut(community_did=community_did, words=words)
