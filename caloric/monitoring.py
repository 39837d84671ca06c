# caloric/monitoring.py
"""
Centralized monitoring: Prometheus metrics, structured JSON logging, optional Sentry.

Env vars:
- PROMETHEUS_ENABLED (default: true)
- SENTRY_DSN (optional)
- LOG_AS_JSON (default: true)
- LOG_LEVEL (default: INFO)
- ENVIRONMENT (default: development)
"""

import os
import logging
import time
from typing import Tuple

import sentry_sdk
from prometheus_client import (
    Counter, Histogram, Gauge,
    generate_latest, CONTENT_TYPE_LATEST, REGISTRY,
)
from pythonjsonlogger import jsonlogger

# --- ENV flags
PROMETHEUS_ENABLED = os.getenv("PROMETHEUS_ENABLED", "true").lower() in ("1", "true", "yes")
SENTRY_DSN = os.getenv("SENTRY_DSN", None)
LOG_AS_JSON = os.getenv("LOG_AS_JSON", "true").lower() in ("1", "true", "yes")
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")


# --- Logger setup
def setup_logger(name: str = "caloric", level: int = None) -> logging.Logger:
    level = logging.getLevelName(os.getenv("LOG_LEVEL", "INFO")) if level is None else level
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        if LOG_AS_JSON:
            fmt = jsonlogger.JsonFormatter(
                "%(asctime)s %(levelname)s %(name)s %(message)s"
            )
            handler.setFormatter(fmt)
        logger.addHandler(handler)
    return logger


logger = setup_logger()

# --- Sentry (optional)
if SENTRY_DSN:
    sentry_sdk.init(dsn=SENTRY_DSN, environment=ENVIRONMENT)
    logger.info("Sentry initialized")


# --- Prometheus metrics
REQUEST_COUNT = Counter(
    "caloric_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

REQUEST_LATENCY = Histogram(
    "caloric_request_latency_seconds",
    "Request latency in seconds",
    ["endpoint"],
)

SEARCH_CACHE = Counter(
    "caloric_search_cache_total",
    "Search response cache lookups",
    ["outcome"],
)

DETAIL_RESOLUTIONS = Counter(
    "caloric_detail_resolutions_total",
    "Food detail resolutions by source",
    ["outcome"],
)

UPSTREAM_LATENCY = Histogram(
    "caloric_upstream_latency_seconds",
    "Nutrition provider call latency",
    ["operation"],
)

AGENT_TURNS = Counter(
    "caloric_agent_turns_total",
    "Model turns executed by the agent loop",
    ["outcome"],
)

TOOL_CALLS = Counter(
    "caloric_tool_calls_total",
    "Tool calls executed",
    ["tool", "outcome"],
)

SESSIONS_ACTIVE = Gauge(
    "caloric_agent_sessions_active",
    "Agent sessions currently held in memory",
)

SESSIONS_EVICTED = Counter(
    "caloric_agent_sessions_evicted_total",
    "Agent sessions evicted after idling",
)


# --- Helper wrappers (never crash the app)
def observe_request(start_ts: float, endpoint: str, method: str, status: str):
    try:
        REQUEST_LATENCY.labels(endpoint=endpoint).observe(time.time() - start_ts)
        REQUEST_COUNT.labels(method=method, endpoint=endpoint, status=status).inc()
    except Exception:
        pass


def observe_upstream(start_ts: float, operation: str):
    try:
        UPSTREAM_LATENCY.labels(operation=operation).observe(time.time() - start_ts)
    except Exception:
        pass


def inc_search_cache(outcome: str):
    try:
        SEARCH_CACHE.labels(outcome=outcome).inc()
    except Exception:
        pass


def inc_detail_resolution(outcome: str):
    try:
        DETAIL_RESOLUTIONS.labels(outcome=outcome).inc()
    except Exception:
        pass


def inc_agent_turn(outcome: str):
    try:
        AGENT_TURNS.labels(outcome=outcome).inc()
    except Exception:
        pass


def inc_tool_call(tool: str, outcome: str):
    try:
        TOOL_CALLS.labels(tool=tool, outcome=outcome).inc()
    except Exception:
        pass


def set_active_sessions(n: int):
    try:
        SESSIONS_ACTIVE.set(n)
    except Exception:
        pass


def inc_sessions_evicted(n: int):
    try:
        if n:
            SESSIONS_EVICTED.inc(n)
    except Exception:
        pass


def prometheus_metrics_response() -> Tuple[bytes, str]:
    """Return (body_bytes, content_type) for Prometheus scrape."""
    try:
        return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
    except Exception:
        return b"", CONTENT_TYPE_LATEST
