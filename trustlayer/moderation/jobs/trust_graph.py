"""Trust graph recomputation: the pipeline job and its fire-and-forget dispatcher."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from redis.exceptions import RedisError

from trustlayer.infra.redis import RedisProxy, redis_client
from trustlayer.moderation.domain.errors import RecomputeCooldownError
from trustlayer.moderation.domain.heuristics import BehavioralFlag, BehavioralHeuristicsEngine
from trustlayer.moderation.domain.sybil import DetectionSummary, SybilClusterRegistry, SybilDetector
from trustlayer.moderation.domain.trust_graph import GraphStats, RecomputeSummary, TrustGraphClient
from trustlayer.obs import metrics

logger = logging.getLogger(__name__)

LAST_RECOMPUTE_KEY = "trust-graph:last-recompute"
LAST_DURATION_KEY = "trust-graph:last-duration-ms"
COOLDOWN_KEY = "trust-graph:recompute-cooldown"
RUN_LOCK_KEY = "trust-graph:recompute-lock"


class JobState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class JobResult:
    trust_computation: RecomputeSummary
    behavioral_flags: list[BehavioralFlag]
    sybil_detection: DetectionSummary
    duration_ms: int


@dataclass(slots=True)
class JobStatus:
    state: JobState = JobState.IDLE
    last_computed_at: datetime | None = None
    last_duration_ms: int | None = None
    last_error: str | None = None


@dataclass(slots=True)
class TrustGraphStatus:
    last_computed_at: datetime | None
    next_scheduled_at: datetime | None
    computation_duration_ms: int | None
    total_nodes: int
    total_edges: int
    clusters_flagged: int
    job: JobStatus = field(default_factory=JobStatus)


class TrustGraphJob:
    """Scores, then behavioural heuristics, then sybil detection."""

    def __init__(
        self,
        client: TrustGraphClient,
        heuristics: BehavioralHeuristicsEngine,
        detector: SybilDetector,
    ) -> None:
        self._client = client
        self._heuristics = heuristics
        self._detector = detector
        self.status = JobStatus()

    async def run(self, community_did: str | None = None) -> JobResult:
        started = time.monotonic()
        self.status.state = JobState.RUNNING
        logger.info("trust_graph_job_started", extra={"community_did": community_did})
        try:
            computation = await self._client.compute_trust_scores(community_did)
            flags = await self._heuristics.run_all(community_did)
            detection = await self._detector.detect_clusters(community_did)
        except Exception as exc:
            self.status.state = JobState.FAILED
            self.status.last_error = str(exc) or exc.__class__.__name__
            raise
        duration_ms = int((time.monotonic() - started) * 1000)
        self.status = JobStatus(
            state=JobState.COMPLETED,
            last_computed_at=datetime.now(timezone.utc),
            last_duration_ms=duration_ms,
        )
        logger.info(
            "trust_graph_job_completed",
            extra={
                "community_did": community_did,
                "nodes": computation.total_nodes,
                "edges": computation.total_edges,
                "flags": len(flags),
                "clusters": detection.clusters_detected,
                "duration_ms": duration_ms,
            },
        )
        return JobResult(
            trust_computation=computation,
            behavioral_flags=flags,
            sybil_detection=detection,
            duration_ms=duration_ms,
        )


class RecomputeDispatcher:
    """Starts recomputes as background tasks and reports on them.

    Admin triggers claim a cooldown key with SET NX; one wins per window.
    A run lock in Redis keeps scheduled, admin and seed runs from overlapping.
    Failures surface only through the task's done-callback.
    """

    def __init__(
        self,
        job: TrustGraphJob,
        registry: SybilClusterRegistry,
        graph_stats: GraphStats,
        redis: RedisProxy | None = None,
        *,
        cooldown_seconds: int = 3600,
    ) -> None:
        self._job = job
        self._registry = registry
        self._stats = graph_stats
        self._redis = redis or redis_client
        self._cooldown = max(1, int(cooldown_seconds))
        self._tasks: set[asyncio.Task] = set()
        self._next_run: Callable[[], Optional[datetime]] | None = None

    async def trigger(self) -> datetime:
        """Admin entry point; raises ``RecomputeCooldownError`` inside the cooldown."""

        now = datetime.now(timezone.utc)
        now_ms = int(now.timestamp() * 1000)
        try:
            claimed = await self._redis.set(COOLDOWN_KEY, str(now_ms), nx=True, ex=self._cooldown)
        except (RedisError, OSError):
            logger.warning("trust_graph_cooldown_claim_failed", exc_info=True)
            claimed = True
        if not claimed:
            metrics.TRUST_RECOMPUTE.labels(result="rejected").inc()
            raise RecomputeCooldownError(await self._cooldown_remaining())
        await self._stamp_last_run(now_ms)
        self.dispatch()
        return now

    def dispatch(self, community_did: str | None = None) -> asyncio.Task:
        """Schedule a recompute without waiting for it."""

        logger.info("trust_graph_recompute_dispatched", extra={"community_did": community_did})
        metrics.TRUST_RECOMPUTE.labels(result="dispatched").inc()
        task = asyncio.create_task(self._run(community_did), name="trust-graph-recompute")
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    async def dispatch_async(self) -> None:
        self.dispatch()

    async def run_scheduled(self) -> None:
        """Scheduler entry point: stamps the run like an admin trigger and waits for it."""

        now_ms = int(datetime.now(timezone.utc).timestamp() * 1000)
        try:
            await self._redis.set(COOLDOWN_KEY, str(now_ms), ex=self._cooldown)
        except (RedisError, OSError):
            logger.warning("trust_graph_cooldown_write_failed", exc_info=True)
        await self._stamp_last_run(now_ms)
        await asyncio.gather(self.dispatch(), return_exceptions=True)

    def set_next_run_provider(self, provider: Callable[[], Optional[datetime]] | None) -> None:
        self._next_run = provider

    async def status(self) -> TrustGraphStatus:
        last_ms = await self._read_int(LAST_RECOMPUTE_KEY)
        duration_ms = await self._read_int(LAST_DURATION_KEY)
        last_computed_at = datetime.fromtimestamp(last_ms / 1000, tz=timezone.utc) if last_ms is not None else None
        if self._next_run is not None:
            next_scheduled_at = self._next_run()
        else:
            next_scheduled_at = last_computed_at + timedelta(seconds=self._cooldown) if last_computed_at else None
        nodes, edges, flagged = await asyncio.gather(
            self._stats.count_nodes(),
            self._stats.count_edges(),
            self._registry.count_flagged(),
        )
        return TrustGraphStatus(
            last_computed_at=last_computed_at,
            next_scheduled_at=next_scheduled_at,
            computation_duration_ms=duration_ms,
            total_nodes=nodes,
            total_edges=edges,
            clusters_flagged=flagged,
            job=self._job.status,
        )

    async def wait_idle(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.wait_idle()

    async def _run(self, community_did: Optional[str]) -> JobResult | None:
        if not await self._acquire_run_lock():
            metrics.TRUST_RECOMPUTE.labels(result="skipped").inc()
            logger.info("trust_graph_recompute_skipped", extra={"community_did": community_did})
            return None
        try:
            result = await self._job.run(community_did)
        finally:
            await self._release_run_lock()
        try:
            await self._redis.set(LAST_DURATION_KEY, str(result.duration_ms))
        except (RedisError, OSError):
            logger.warning("trust_graph_duration_write_failed", exc_info=True)
        return result

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.info("trust_graph_recompute_cancelled")
            return
        exc = task.exception()
        if exc is not None:
            metrics.TRUST_RECOMPUTE.labels(result="failed").inc()
            logger.error("trust_graph_recompute_failed", exc_info=exc)
            return
        if task.result() is not None:
            metrics.TRUST_RECOMPUTE.labels(result="completed").inc()

    async def _acquire_run_lock(self) -> bool:
        try:
            return bool(await self._redis.set(RUN_LOCK_KEY, "1", nx=True, ex=self._cooldown))
        except (RedisError, OSError):
            logger.warning("trust_graph_run_lock_failed", exc_info=True)
            return True

    async def _release_run_lock(self) -> None:
        try:
            await self._redis.delete(RUN_LOCK_KEY)
        except (RedisError, OSError):
            logger.warning("trust_graph_run_lock_release_failed", exc_info=True)

    async def _stamp_last_run(self, now_ms: int) -> None:
        try:
            await self._redis.set(LAST_RECOMPUTE_KEY, str(now_ms))
        except (RedisError, OSError):
            logger.warning("trust_graph_last_run_write_failed", exc_info=True)

    async def _cooldown_remaining(self) -> int:
        try:
            ttl = await self._redis.ttl(COOLDOWN_KEY)
        except (RedisError, OSError):
            ttl = None
        if ttl is None or ttl <= 0:
            return self._cooldown
        return int(ttl)

    async def _read_int(self, key: str) -> int | None:
        try:
            raw = await self._redis.get(key)
        except (RedisError, OSError):
            logger.warning("trust_graph_status_read_failed", extra={"key": key}, exc_info=True)
            return None
        if raw is None:
            return None
        try:
            return int(float(raw))
        except (TypeError, ValueError):
            return None
