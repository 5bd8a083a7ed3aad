"""Central registry for Prometheus metrics used across the trust layer."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

REQUEST_COUNTER = Counter(
	"trustlayer_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"trustlayer_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

ANTISPAM_DECISIONS = Counter(
	"trustlayer_antispam_decisions_total",
	"Anti-spam gate decisions",
	["outcome"],
)

ANTISPAM_HOLDS = Counter(
	"trustlayer_antispam_holds_total",
	"Anti-spam hold reasons emitted",
	["reason"],
)

ANTISPAM_CHECK_LATENCY = Histogram(
	"trustlayer_antispam_check_duration_seconds",
	"Anti-spam gate latency in seconds",
	buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
)

RATE_WINDOW_FAIL_OPEN = Counter(
	"trustlayer_rate_window_fail_open_total",
	"Rate window checks that failed open due to cache errors",
	["kind"],
)

SETTINGS_CACHE = Counter(
	"trustlayer_antispam_settings_cache_total",
	"Anti-spam settings cache lookups",
	["result"],
)

QUEUE_TRANSITIONS = Counter(
	"trustlayer_moderation_queue_transitions_total",
	"Moderation queue item transitions",
	["action"],
)

QUEUE_ENQUEUED = Counter(
	"trustlayer_moderation_queue_enqueued_total",
	"Moderation queue items created",
	["reason"],
)

TRUST_PROMOTIONS = Counter(
	"trustlayer_trust_promotions_total",
	"Accounts promoted to trusted within a community",
)

BEHAVIORAL_FLAGS = Counter(
	"trustlayer_behavioral_flags_total",
	"Behavioral flags produced by the heuristics engine",
	["flag_type"],
)

DETECTOR_FAILURES = Counter(
	"trustlayer_behavioral_detector_failures_total",
	"Heuristic detector runs that raised",
	["detector"],
)

SYBIL_STATUS_CHANGES = Counter(
	"trustlayer_sybil_cluster_status_total",
	"Sybil cluster status transitions",
	["status"],
)

BAN_PROPAGATION_FAILURES = Counter(
	"trustlayer_ban_propagation_failures_total",
	"Cluster members whose ban could not be applied",
)

TRUST_SCORE_FALLBACKS = Counter(
	"trustlayer_trust_score_fallbacks_total",
	"Trust score lookups that fell back to the default value",
)

TRUST_RECOMPUTE = Counter(
	"trustlayer_trust_recompute_total",
	"Trust graph recompute dispatches",
	["result"],
)


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)
