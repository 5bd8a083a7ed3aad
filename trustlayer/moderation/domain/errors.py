"""Moderation workflow failures shared by the domain services."""

from __future__ import annotations


class ModerationWorkflowError(Exception):
    """Base class for moderation workflow failures."""


class InvalidInputError(ModerationWorkflowError, ValueError):
    pass


class NotFoundError(ModerationWorkflowError, LookupError):
    pass


class QueueItemNotFoundError(NotFoundError):
    pass


class TrustSeedNotFoundError(NotFoundError):
    pass


class ClusterNotFoundError(NotFoundError):
    pass


class BehavioralFlagNotFoundError(NotFoundError):
    pass


class AccountNotFoundError(NotFoundError):
    pass


class QueueItemConflictError(ModerationWorkflowError):
    """Raised when a queue item has already been reviewed."""


class RecomputeCooldownError(ModerationWorkflowError):
    def __init__(self, retry_after: int) -> None:
        super().__init__("recompute_cooldown")
        self.retry_after = retry_after


class TrustSeedConflictError(ModerationWorkflowError):
    """Raised when the account is already seeded for the requested scope."""


class WriteRateLimitedError(ModerationWorkflowError):
    def __init__(self, retry_after: int) -> None:
        super().__init__("write_rate_limited")
        self.retry_after = retry_after
