"""Moderation API routers."""

from fastapi import APIRouter

from . import anti_spam, queue, reputation
from .admin import behavioral_flags, pds_factors, sybil_clusters, trust_graph, trust_seeds, word_filter

router = APIRouter()
router.include_router(anti_spam.router)
router.include_router(queue.router)
router.include_router(reputation.router)
router.include_router(trust_seeds.router)
router.include_router(pds_factors.router)
router.include_router(sybil_clusters.router)
router.include_router(behavioral_flags.router)
router.include_router(word_filter.router)
router.include_router(trust_graph.router)

__all__ = ["router"]
