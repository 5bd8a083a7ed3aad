"""Submission screening endpoint used by the content write path."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from trustlayer.moderation.api.deps import get_actor_did, to_http_error
from trustlayer.moderation.domain.anti_spam import AntiSpamGate, AntiSpamResult
from trustlayer.moderation.domain.container import get_anti_spam_gate
from trustlayer.moderation.domain.errors import ModerationWorkflowError
from trustlayer.moderation.domain.queue import ContentType

router = APIRouter(prefix="/api/mod/v1/antispam", tags=["moderation-antispam"])


class SubmissionIn(BaseModel):
    community_did: str = Field(..., min_length=1)
    content_type: ContentType
    content: str
    title: str | None = None
    content_uri: str | None = Field(default=None, description="When set, held submissions are queued for review")


class HoldOut(BaseModel):
    reason: str
    matched_words: list[str] | None = None


class ScreeningOut(BaseModel):
    held: bool
    reasons: list[HoldOut]
    queue_item_ids: list[int] = Field(default_factory=list)

    @classmethod
    def from_domain(cls, result: AntiSpamResult, queue_item_ids: list[int]) -> "ScreeningOut":
        return cls(
            held=result.held,
            reasons=[HoldOut(reason=hold.reason.value, matched_words=hold.matched_words) for hold in result.reasons],
            queue_item_ids=queue_item_ids,
        )


def get_gate_dep() -> AntiSpamGate:
    return get_anti_spam_gate()


@router.post("/check", response_model=ScreeningOut)
async def check_submission(
    body: SubmissionIn,
    author_did: str = Depends(get_actor_did),
    gate: AntiSpamGate = Depends(get_gate_dep),
) -> ScreeningOut:
    try:
        result = await gate.screen_submission(
            author_did,
            body.community_did,
            body.content_type,
            body.content,
            title=body.title,
        )
    except ModerationWorkflowError as exc:
        raise to_http_error(exc) from exc
    queued: list[int] = []
    if result.held and body.content_uri:
        items = await gate.enqueue_held(body.content_uri, body.content_type, author_did, body.community_did, result)
        queued = [item.id for item in items]
    return ScreeningOut.from_domain(result, queued)
