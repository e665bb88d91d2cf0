"""Prometheus metrics for the pool gateway."""

from __future__ import annotations

from prometheus_client import Counter, Histogram, Gauge


# ── HTTP metrics ─────────────────────────────────────────────
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

HTTP_REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 120.0),
)

# ── Dispatch metrics ─────────────────────────────────────────
DISPATCH_ATTEMPTS = Counter(
    "dispatch_attempts_total",
    "Upstream attempts made by the dispatcher",
    ["provider_type", "outcome"],  # success / timeout / rate_limited / ...
)

DISPATCH_LATENCY = Histogram(
    "dispatch_attempt_latency_seconds",
    "Latency of a single upstream attempt",
    ["provider_type", "stream"],
    buckets=(0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0),
)

POOL_EXHAUSTED_TOTAL = Counter(
    "pool_exhausted_total",
    "Dispatches that ended because no eligible instance remained",
    ["provider_type"],
)

# ── Pool state ───────────────────────────────────────────────
POOL_INSTANCES = Gauge(
    "pool_instances",
    "Instances per provider type and health state",
    ["provider_type", "state"],  # healthy / checking / banned / disabled
)

INSTANCES_BANNED_TOTAL = Counter(
    "instances_banned_total",
    "Healthy to banned transitions caused by live traffic",
    ["provider_type"],
)

# ── Background work ──────────────────────────────────────────
HEALTH_PROBES_TOTAL = Counter(
    "health_probes_total",
    "Health probes by result",
    ["provider_type", "result"],  # ok / failed / timeout
)

TOKEN_REFRESH_TOTAL = Counter(
    "token_refresh_total",
    "OAuth token refresh attempts by result",
    ["provider_type", "result"],
)

# ── Usage cache ──────────────────────────────────────────────
USAGE_CACHE_REQUESTS = Counter(
    "usage_cache_requests_total",
    "Usage cache lookups",
    ["result"],  # hit / stale / miss
)

USAGE_FETCHES_TOTAL = Counter(
    "usage_fetches_total",
    "Upstream usage queries",
    ["result"],  # ok / error
)
