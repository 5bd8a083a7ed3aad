"""Lightweight service container shared by moderation modules."""

from __future__ import annotations

from typing import Optional, Sequence

import asyncpg
import httpx
from redis.asyncio import Redis

from trustlayer.infra.rate_window import RateWindow
from trustlayer.infra.redis import RedisProxy, redis_client
from trustlayer.moderation.domain.accounts import AccountDirectory, InMemoryAccountDirectory
from trustlayer.moderation.domain.anti_spam import AntiSpamGate
from trustlayer.moderation.domain.heuristics import (
    ActivitySource,
    BehavioralHeuristicsEngine,
    FlagRepository,
    InMemoryActivitySource,
    InMemoryFlagRepository,
)
from trustlayer.moderation.domain.queue import InMemoryQueueRepository, ModerationQueue, QueueRepository
from trustlayer.moderation.domain.reputation import (
    ContentStats,
    InMemoryContentStats,
    InMemoryPdsTrustFactorRepository,
    PdsTrustFactorRepository,
    PdsTrustFactorService,
    ReputationCalculator,
)
from trustlayer.moderation.domain.settings_store import (
    AntiSpamSettings,
    InMemorySettingsRepository,
    SettingsRepository,
    SettingsStore,
    load_antispam_defaults,
)
from trustlayer.moderation.domain.sybil import (
    InMemorySybilClusterRepository,
    InMemorySybilGraphSource,
    SybilClusterRegistry,
    SybilClusterRepository,
    SybilDetector,
    SybilGraphSource,
)
from trustlayer.moderation.domain.trust import (
    InMemoryTrustRepository,
    InMemoryTrustSeedRepository,
    TrustRepository,
    TrustSeedRepository,
    TrustSeedService,
)
from trustlayer.moderation.domain.trust_graph import (
    GraphStats,
    HttpTrustGraphClient,
    InMemoryGraphStats,
    StaticTrustGraphClient,
    TrustGraphClient,
)
from trustlayer.moderation.infra.accounts_repo import PostgresAccountDirectory
from trustlayer.moderation.infra.heuristics_repo import PostgresActivitySource, PostgresFlagRepository
from trustlayer.moderation.infra.queue_repo import PostgresQueueRepository
from trustlayer.moderation.infra.reputation_repo import (
    PostgresContentStats,
    PostgresGraphStats,
    PostgresPdsTrustFactorRepository,
)
from trustlayer.moderation.infra.settings_repo import PostgresSettingsRepository
from trustlayer.moderation.infra.sybil_repo import PostgresSybilClusterRepository, PostgresSybilGraphSource
from trustlayer.moderation.infra.trust_repo import PostgresTrustRepository, PostgresTrustSeedRepository
from trustlayer.moderation.jobs.scheduler import RecomputeScheduler
from trustlayer.moderation.jobs.trust_graph import RecomputeDispatcher, TrustGraphJob
from trustlayer.settings import settings

_redis_proxy: RedisProxy = redis_client
_staff_roles: tuple[str, ...] = tuple(settings.moderation_staff_roles)
_antispam_defaults: AntiSpamSettings = AntiSpamSettings()
_http_client: httpx.AsyncClient | None = None
_scheduler: RecomputeScheduler | None = None

_accounts: AccountDirectory = InMemoryAccountDirectory()
_trust_repo: TrustRepository = InMemoryTrustRepository()
_settings_repo: SettingsRepository = InMemorySettingsRepository()
_queue_repo: QueueRepository = InMemoryQueueRepository(trust=_trust_repo)
_seed_repo: TrustSeedRepository = InMemoryTrustSeedRepository()
_flag_repo: FlagRepository = InMemoryFlagRepository()
_activity: ActivitySource = InMemoryActivitySource()
_cluster_repo: SybilClusterRepository = InMemorySybilClusterRepository()
_graph_source: SybilGraphSource = InMemorySybilGraphSource()
_pds_repo: PdsTrustFactorRepository = InMemoryPdsTrustFactorRepository()
_content_stats: ContentStats = InMemoryContentStats()
_graph_stats: GraphStats = InMemoryGraphStats()
_trust_graph: TrustGraphClient = StaticTrustGraphClient()

_settings_store: SettingsStore
_queue: ModerationQueue
_gate: AntiSpamGate
_heuristics: BehavioralHeuristicsEngine
_sybil_registry: SybilClusterRegistry
_sybil_detector: SybilDetector
_trust_graph_job: TrustGraphJob
_dispatcher: RecomputeDispatcher
_seed_service: TrustSeedService
_pds_service: PdsTrustFactorService
_reputation: ReputationCalculator


def _build_services() -> None:
    global _settings_store, _queue, _gate, _heuristics, _sybil_registry, _sybil_detector
    global _trust_graph_job, _dispatcher, _seed_service, _pds_service, _reputation
    _settings_store = SettingsStore(
        _settings_repo,
        _redis_proxy,
        ttl_seconds=settings.antispam_settings_ttl_seconds,
        defaults=_antispam_defaults,
    )
    _queue = ModerationQueue(_queue_repo, _settings_store)
    _gate = AntiSpamGate(
        settings_store=_settings_store,
        trust=_trust_repo,
        accounts=_accounts,
        queue=_queue,
        burst_window=RateWindow(_redis_proxy, kind="burst"),
        write_window=RateWindow(_redis_proxy, kind="write_rate"),
        staff_roles=_staff_roles,
    )
    _heuristics = BehavioralHeuristicsEngine(_activity, _flag_repo)
    _sybil_registry = SybilClusterRegistry(_cluster_repo, _accounts)
    _sybil_detector = SybilDetector(_graph_source, _sybil_registry)
    _trust_graph_job = TrustGraphJob(_trust_graph, _heuristics, _sybil_detector)
    _dispatcher = RecomputeDispatcher(
        _trust_graph_job,
        _sybil_registry,
        _graph_stats,
        _redis_proxy,
        cooldown_seconds=settings.trust_recompute_cooldown_seconds,
    )
    if _scheduler is not None:
        _dispatcher.set_next_run_provider(_scheduler.next_run_at)
    _seed_service = TrustSeedService(
        _seed_repo,
        _accounts,
        trigger_recompute=_dispatcher.dispatch_async,
        staff_roles=_staff_roles,
    )
    _pds_service = PdsTrustFactorService(_pds_repo)
    _reputation = ReputationCalculator(
        accounts=_accounts,
        stats=_content_stats,
        trust_graph=_trust_graph,
        pds_factors=_pds_service,
        clusters=_cluster_repo,
        trust=_trust_repo,
        seeds=_seed_service,
        score_timeout=settings.trust_score_timeout_seconds,
        staff_roles=_staff_roles,
    )


_build_services()


def configure(
    *,
    accounts: Optional[AccountDirectory] = None,
    trust_repository: Optional[TrustRepository] = None,
    settings_repository: Optional[SettingsRepository] = None,
    queue_repository: Optional[QueueRepository] = None,
    seed_repository: Optional[TrustSeedRepository] = None,
    flag_repository: Optional[FlagRepository] = None,
    activity_source: Optional[ActivitySource] = None,
    cluster_repository: Optional[SybilClusterRepository] = None,
    graph_source: Optional[SybilGraphSource] = None,
    pds_repository: Optional[PdsTrustFactorRepository] = None,
    content_stats: Optional[ContentStats] = None,
    graph_stats: Optional[GraphStats] = None,
    trust_graph: Optional[TrustGraphClient] = None,
    redis_proxy: Optional[RedisProxy] = None,
    antispam_defaults: Optional[AntiSpamSettings] = None,
    staff_roles: Optional[Sequence[str]] = None,
) -> None:
    """Swap any collaborator and rebuild the services that depend on it.

    A new trust repository without a new queue repository gets a fresh
    in-memory queue wired to it, so approvals keep feeding the same ledger.
    """

    global _accounts, _trust_repo, _settings_repo, _queue_repo, _seed_repo, _flag_repo, _activity
    global _cluster_repo, _graph_source, _pds_repo, _content_stats, _graph_stats, _trust_graph
    global _redis_proxy, _antispam_defaults, _staff_roles
    if accounts is not None:
        _accounts = accounts
    if trust_repository is not None:
        _trust_repo = trust_repository
        if queue_repository is None and isinstance(trust_repository, InMemoryTrustRepository):
            _queue_repo = InMemoryQueueRepository(trust=trust_repository)
    if settings_repository is not None:
        _settings_repo = settings_repository
    if queue_repository is not None:
        _queue_repo = queue_repository
    if seed_repository is not None:
        _seed_repo = seed_repository
    if flag_repository is not None:
        _flag_repo = flag_repository
    if activity_source is not None:
        _activity = activity_source
    if cluster_repository is not None:
        _cluster_repo = cluster_repository
    if graph_source is not None:
        _graph_source = graph_source
    if pds_repository is not None:
        _pds_repo = pds_repository
    if content_stats is not None:
        _content_stats = content_stats
    if graph_stats is not None:
        _graph_stats = graph_stats
    if trust_graph is not None:
        _trust_graph = trust_graph
    if antispam_defaults is not None:
        _antispam_defaults = antispam_defaults
    if staff_roles is not None:
        _staff_roles = tuple(role.lower() for role in staff_roles)
    _redis_proxy = redis_proxy or _redis_proxy
    _build_services()


def configure_postgres(
    pool: asyncpg.Pool,
    redis_conn: Redis | RedisProxy,
    *,
    antispam_defaults_path: Optional[str] = None,
    trust_graph: Optional[TrustGraphClient] = None,
) -> None:
    global _http_client
    proxy = redis_conn if isinstance(redis_conn, RedisProxy) else RedisProxy(redis_conn)
    defaults = load_antispam_defaults(antispam_defaults_path) if antispam_defaults_path else None
    if trust_graph is None:
        _http_client = _http_client or httpx.AsyncClient()
        trust_graph = HttpTrustGraphClient(
            http=_http_client,
            base_url=settings.trust_graph_url,
            score_timeout=settings.trust_score_timeout_seconds,
        )
    configure(
        accounts=PostgresAccountDirectory(pool, staff_roles=_staff_roles),
        trust_repository=PostgresTrustRepository(pool),
        settings_repository=PostgresSettingsRepository(pool),
        queue_repository=PostgresQueueRepository(pool),
        seed_repository=PostgresTrustSeedRepository(pool),
        flag_repository=PostgresFlagRepository(pool),
        activity_source=PostgresActivitySource(pool),
        cluster_repository=PostgresSybilClusterRepository(pool),
        graph_source=PostgresSybilGraphSource(pool),
        pds_repository=PostgresPdsTrustFactorRepository(pool),
        content_stats=PostgresContentStats(pool),
        graph_stats=PostgresGraphStats(pool),
        trust_graph=trust_graph,
        redis_proxy=proxy,
        antispam_defaults=defaults,
    )


async def _scheduled_recompute() -> None:
    await _dispatcher.run_scheduled()


def start_scheduler(interval_seconds: int) -> RecomputeScheduler:
    """Start periodic recomputes; the dispatcher reports the next run in its status."""

    global _scheduler
    if _scheduler is None:
        _scheduler = RecomputeScheduler(_scheduled_recompute, interval_seconds=interval_seconds)
        _scheduler.start()
    _dispatcher.set_next_run_provider(_scheduler.next_run_at)
    return _scheduler


async def shutdown() -> None:
    global _http_client, _scheduler
    if _scheduler is not None:
        _scheduler.shutdown()
        _scheduler = None
        _dispatcher.set_next_run_provider(None)
    await _dispatcher.shutdown()
    if _http_client is not None:
        await _http_client.aclose()
        _http_client = None


def get_accounts() -> AccountDirectory:
    return _accounts


def get_settings_store() -> SettingsStore:
    return _settings_store


def get_anti_spam_gate() -> AntiSpamGate:
    return _gate


def get_queue() -> ModerationQueue:
    return _queue


def get_seed_service() -> TrustSeedService:
    return _seed_service


def get_heuristics() -> BehavioralHeuristicsEngine:
    return _heuristics


def get_sybil_registry() -> SybilClusterRegistry:
    return _sybil_registry


def get_sybil_detector() -> SybilDetector:
    return _sybil_detector


def get_pds_service() -> PdsTrustFactorService:
    return _pds_service


def get_reputation() -> ReputationCalculator:
    return _reputation


def get_dispatcher() -> RecomputeDispatcher:
    return _dispatcher


def get_staff_roles() -> tuple[str, ...]:
    return _staff_roles
