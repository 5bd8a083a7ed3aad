"""FastAPI application entrypoint."""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from trustlayer.api import ops
from trustlayer.infra import postgres
from trustlayer.infra.migrations import apply_migrations
from trustlayer.infra.redis import redis_client
from trustlayer.moderation import configure_postgres as configure_moderation
from trustlayer.moderation import router as moderation_router
from trustlayer.moderation.domain import container as moderation_container
from trustlayer.obs import init as obs_init
from trustlayer.settings import settings

DEFAULT_CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"


def _antispam_defaults_path() -> str | None:
	if settings.antispam_defaults_path:
		return settings.antispam_defaults_path
	bundled = DEFAULT_CONFIG_DIR / "antispam.yml"
	return str(bundled) if bundled.exists() else None


@asynccontextmanager
async def lifespan(app: FastAPI):
	pool = await postgres.init_pool()
	if settings.postgres_apply_migrations:
		await apply_migrations(pool)
	configure_moderation(
		pool,
		redis_client,
		antispam_defaults_path=_antispam_defaults_path(),
	)
	if settings.trust_recompute_interval_seconds > 0:
		moderation_container.start_scheduler(settings.trust_recompute_interval_seconds)
	try:
		yield
	finally:
		await moderation_container.shutdown()
		await postgres.close_pool()


app = FastAPI(title="Forum Trust Layer", lifespan=lifespan)
obs_init(app)

app.include_router(ops.router)
app.include_router(moderation_router, tags=["moderation"])
