"""Per-submission anti-spam gate: publish immediately or hold for review."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence

from trustlayer.infra.rate_window import RateWindow
from trustlayer.moderation.domain.accounts import STAFF_ROLES, AccountDirectory
from trustlayer.moderation.domain.errors import WriteRateLimitedError
from trustlayer.moderation.domain.queue import ContentType, ModerationQueue, QueueItem, QueueReason
from trustlayer.moderation.domain.settings_store import AntiSpamSettings, SettingsStore
from trustlayer.moderation.domain.trust import AccountTrust, TrustRepository
from trustlayer.obs import metrics

logger = logging.getLogger(__name__)

URL_PATTERN = re.compile(r"https?://\S+|www\.\S+", re.IGNORECASE)

WRITE_RATE_WINDOW_MILLIS = 60_000
_DAY_SECONDS = 86_400


@dataclass(slots=True)
class QueueHold:
    reason: QueueReason
    matched_words: Optional[list[str]] = None


@dataclass(slots=True)
class AntiSpamResult:
    held: bool = False
    reasons: list[QueueHold] = field(default_factory=list)

    def reason_codes(self) -> list[str]:
        return [hold.reason.value for hold in self.reasons]


def check_word_filter(content: str, title: str | None, words: Sequence[str]) -> list[str]:
    """Return every filter phrase found as a whole word, case-insensitively."""

    if not words:
        return []
    text = f"{title} {content}" if title else content
    return [word for word in words if re.search(rf"\b{re.escape(word)}\b", text, re.IGNORECASE)]


def contains_urls(content: str) -> bool:
    return URL_PATTERN.search(content) is not None


def burst_key(community_did: str, author_did: str) -> str:
    return f"antispam:burst:{community_did}:{author_did}"


def write_rate_key(community_did: str, author_did: str) -> str:
    return f"antispam:rate:{community_did}:{author_did}"


class AntiSpamGate:
    """Decides whether a submission is published or held, and why.

    Trusted accounts and staff bypass every check and consume no rate budget.
    The word filter and burst detection apply to everyone else; first-post and
    link holds apply to new accounts only.
    """

    def __init__(
        self,
        *,
        settings_store: SettingsStore,
        trust: TrustRepository,
        accounts: AccountDirectory,
        queue: ModerationQueue,
        burst_window: RateWindow | None = None,
        write_window: RateWindow | None = None,
        staff_roles: Iterable[str] = STAFF_ROLES,
    ) -> None:
        self._settings = settings_store
        self._trust = trust
        self._accounts = accounts
        self._queue = queue
        self._burst = burst_window or RateWindow(kind="burst")
        self._write = write_window or RateWindow(kind="write_rate")
        self._staff_roles = frozenset(role.lower() for role in staff_roles)

    async def run_anti_spam_checks(
        self,
        author_did: str,
        community_did: str,
        content_type: ContentType,
        content: str,
        title: str | None = None,
    ) -> AntiSpamResult:
        started = time.perf_counter()
        try:
            result = await self._evaluate(author_did, community_did, content, title)
        finally:
            metrics.ANTISPAM_CHECK_LATENCY.observe(time.perf_counter() - started)
        metrics.ANTISPAM_DECISIONS.labels(outcome="held" if result.held else "published").inc()
        for hold in result.reasons:
            metrics.ANTISPAM_HOLDS.labels(reason=hold.reason.value).inc()
        if result.held:
            logger.info(
                "antispam_hold",
                extra={
                    "author_did": author_did,
                    "community_did": community_did,
                    "content_type": content_type.value,
                    "reasons": result.reason_codes(),
                },
            )
        return result

    async def _evaluate(self, author_did: str, community_did: str, content: str, title: str | None) -> AntiSpamResult:
        settings = await self._settings.load(community_did)

        trust = await self._trust.get(author_did, community_did)
        if await self._bypasses(author_did, trust):
            return AntiSpamResult()

        is_new = await self.is_new_account(author_did, community_did, settings, trust=trust)
        reasons: list[QueueHold] = []

        matched = check_word_filter(content, title, settings.word_filter)
        if matched:
            reasons.append(QueueHold(QueueReason.WORD_FILTER, matched_words=matched))

        if is_new:
            approved = trust.approved_post_count if trust else 0
            if 0 < settings.first_post_queue_count and approved < settings.first_post_queue_count:
                reasons.append(QueueHold(QueueReason.FIRST_POST))
            if settings.link_hold_enabled and contains_urls(content):
                reasons.append(QueueHold(QueueReason.LINK_HOLD))

        if await self._burst.check_and_record(
            burst_key(community_did, author_did),
            window_millis=settings.burst_window_minutes * 60_000,
            limit=settings.burst_post_count,
        ):
            reasons.append(QueueHold(QueueReason.BURST))

        return AntiSpamResult(held=bool(reasons), reasons=reasons)

    async def screen_submission(
        self,
        author_did: str,
        community_did: str,
        content_type: ContentType,
        content: str,
        title: str | None = None,
    ) -> AntiSpamResult:
        """Write-path screening: rate budget first, then the checks, then the topic delay.

        Raises ``WriteRateLimitedError`` when the author is over budget.
        """

        settings = await self._settings.load(community_did)
        trust = await self._trust.get(author_did, community_did)
        exempt = await self._bypasses(author_did, trust)
        if not exempt:
            is_new = await self.is_new_account(author_did, community_did, settings, trust=trust)
            if await self.check_write_rate_limit(author_did, community_did, is_new, settings):
                metrics.ANTISPAM_DECISIONS.labels(outcome="rate_limited").inc()
                logger.info("antispam_write_rate_limited", extra={"author_did": author_did, "community_did": community_did})
                raise WriteRateLimitedError(WRITE_RATE_WINDOW_MILLIS // 1000)

        result = await self.run_anti_spam_checks(author_did, community_did, content_type, content, title=title)
        if content_type is ContentType.TOPIC and not exempt:
            if not await self.can_create_topic(author_did, community_did, settings):
                result.reasons.append(QueueHold(QueueReason.TOPIC_DELAY))
                result.held = True
                metrics.ANTISPAM_HOLDS.labels(reason=QueueReason.TOPIC_DELAY.value).inc()
        return result

    async def _bypasses(self, author_did: str, trust: AccountTrust | None) -> bool:
        if trust is not None and trust.is_trusted:
            return True
        account = await self._accounts.get_account(author_did)
        return account is not None and account.is_staff(self._staff_roles)

    async def is_new_account(
        self,
        author_did: str,
        community_did: str,
        settings: AntiSpamSettings,
        *,
        trust: AccountTrust | None = None,
    ) -> bool:
        """Community approval history plus global first-seen age stand in for tenure."""

        if settings.new_account_days <= 0:
            return False
        if trust is None:
            trust = await self._trust.get(author_did, community_did)
        if trust is not None and trust.approved_post_count > 0:
            account = await self._accounts.get_account(author_did)
            if account is not None:
                age = datetime.now(timezone.utc) - account.first_seen_at
                return age.total_seconds() / _DAY_SECONDS < settings.new_account_days
        return True

    async def check_write_rate_limit(
        self,
        author_did: str,
        community_did: str,
        is_new: bool,
        settings: AntiSpamSettings,
    ) -> bool:
        """True when the author is over the per-minute write budget."""

        limit = settings.new_account_write_rate_per_min if is_new else settings.established_write_rate_per_min
        return await self._write.check_and_record(
            write_rate_key(community_did, author_did),
            window_millis=WRITE_RATE_WINDOW_MILLIS,
            limit=limit,
        )

    async def can_create_topic(self, author_did: str, community_did: str, settings: AntiSpamSettings) -> bool:
        if not settings.topic_creation_delay_enabled:
            return True
        trust = await self._trust.get(author_did, community_did)
        return trust is not None and trust.approved_post_count > 0

    async def enqueue_held(
        self,
        content_uri: str,
        content_type: ContentType,
        author_did: str,
        community_did: str,
        result: AntiSpamResult,
    ) -> list[QueueItem]:
        """Persist one queue row per hold reason."""

        items = []
        for hold in result.reasons:
            items.append(
                await self._queue.enqueue(
                    content_uri=content_uri,
                    content_type=content_type,
                    author_did=author_did,
                    community_did=community_did,
                    reason=hold.reason,
                    matched_words=hold.matched_words,
                )
            )
        return items
