from dataclasses import dataclass, field

import fakeredis
import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis
from httpx import ASGITransport, AsyncClient

from trustlayer.infra import postgres
from trustlayer.infra.redis import redis_client, set_redis_client
from trustlayer.main import app
from trustlayer.moderation.domain import container
from trustlayer.moderation.domain.accounts import InMemoryAccountDirectory
from trustlayer.moderation.domain.heuristics import InMemoryActivitySource, InMemoryFlagRepository
from trustlayer.moderation.domain.queue import InMemoryQueueRepository
from trustlayer.moderation.domain.reputation import InMemoryContentStats, InMemoryPdsTrustFactorRepository
from trustlayer.moderation.domain.settings_store import InMemorySettingsRepository
from trustlayer.moderation.domain.sybil import InMemorySybilClusterRepository, InMemorySybilGraphSource
from trustlayer.moderation.domain.trust import InMemoryTrustRepository, InMemoryTrustSeedRepository
from trustlayer.moderation.domain.trust_graph import InMemoryGraphStats, StaticTrustGraphClient

from tests.factories import ADMIN, ALICE, BOB, MODERATOR, make_account


@dataclass
class ModerationEnv:
    accounts: InMemoryAccountDirectory
    trust: InMemoryTrustRepository = field(default_factory=InMemoryTrustRepository)
    settings: InMemorySettingsRepository = field(default_factory=InMemorySettingsRepository)
    seeds: InMemoryTrustSeedRepository = field(default_factory=InMemoryTrustSeedRepository)
    flags: InMemoryFlagRepository = field(default_factory=InMemoryFlagRepository)
    activity: InMemoryActivitySource = field(default_factory=InMemoryActivitySource)
    clusters: InMemorySybilClusterRepository = field(default_factory=InMemorySybilClusterRepository)
    graph_source: InMemorySybilGraphSource = field(default_factory=InMemorySybilGraphSource)
    pds: InMemoryPdsTrustFactorRepository = field(default_factory=InMemoryPdsTrustFactorRepository)
    stats: InMemoryContentStats = field(default_factory=InMemoryContentStats)
    graph_stats: InMemoryGraphStats = field(default_factory=InMemoryGraphStats)
    trust_graph: StaticTrustGraphClient = field(default_factory=StaticTrustGraphClient)
    queue: InMemoryQueueRepository | None = None


@pytest.fixture(autouse=True)
def fake_redis():
    original = redis_client.client
    client = FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    set_redis_client(client)
    try:
        yield client
    finally:
        set_redis_client(original)


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
    async def _noop():
        return None

    monkeypatch.setattr(postgres, "init_pool", _noop)
    monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture
def moderation_env() -> ModerationEnv:
    accounts = InMemoryAccountDirectory(
        [
            make_account(MODERATOR, "mod.forum.example", role="moderator", days_old=400),
            make_account(ADMIN, "admin.forum.example", role="admin", days_old=500),
            make_account(ALICE, "alice.bsky.social"),
            make_account(BOB, "bob.bsky.social", days_old=1),
        ]
    )
    env = ModerationEnv(accounts=accounts)
    env.queue = InMemoryQueueRepository(trust=env.trust)
    container.configure(
        accounts=env.accounts,
        trust_repository=env.trust,
        settings_repository=env.settings,
        queue_repository=env.queue,
        seed_repository=env.seeds,
        flag_repository=env.flags,
        activity_source=env.activity,
        cluster_repository=env.clusters,
        graph_source=env.graph_source,
        pds_repository=env.pds,
        content_stats=env.stats,
        graph_stats=env.graph_stats,
        trust_graph=env.trust_graph,
        redis_proxy=redis_client,
        staff_roles=("moderator", "admin"),
    )
    return env


@pytest_asyncio.fixture
async def api_client(moderation_env):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
    await container.get_dispatcher().shutdown()
