# castgate/monitoring.py
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
    Counter, Histogram,
    generate_latest, CONTENT_TYPE_LATEST, REGISTRY,
)
from pythonjsonlogger import jsonlogger

# --- ENV flags
PROMETHEUS_ENABLED = os.getenv("PROMETHEUS_ENABLED", "true").lower() in ("1", "true", "yes")
SENTRY_DSN = os.getenv("SENTRY_DSN", None)
LOG_AS_JSON = os.getenv("LOG_AS_JSON", "true").lower() in ("1", "true", "yes")
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")


# --- Logger setup
def setup_logger(name: str = "castgate", level: int = None) -> logging.Logger:
    level = logging.getLevelName(os.getenv("LOG_LEVEL", "INFO")) if level is None else level
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        if LOG_AS_JSON:
            handler.setFormatter(jsonlogger.JsonFormatter(
                "%(asctime)s %(levelname)s %(name)s %(message)s"
            ))
        logger.addHandler(handler)
    return logger


logger = setup_logger()

# --- Sentry (optional)
if SENTRY_DSN:
    sentry_sdk.init(dsn=SENTRY_DSN, environment=ENVIRONMENT)
    logger.info("Sentry initialized")


# --- Prometheus metrics
HTTP_REQUEST_COUNT = Counter(
    "castgate_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

HTTP_REQUEST_LATENCY = Histogram(
    "castgate_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["endpoint"],
)

EXECUTIONS = Counter(
    "castgate_executions_total",
    "Cast request executions by terminal outcome",
    ["kind", "outcome"],
)

EXECUTION_LATENCY = Histogram(
    "castgate_execution_latency_seconds",
    "Time from beginExecution to terminal state",
    ["kind"],
)

CACHE_LOOKUPS = Counter(
    "castgate_cache_lookups_total",
    "Cache lookups (per value, or per row for arrays)",
    ["kind", "result"],
)

LLM_ATTEMPTS = Counter(
    "castgate_llm_attempts_total",
    "LLM call attempts",
    ["outcome"],
)

TOKENS = Counter(
    "castgate_tokens_total",
    "Token usage, fresh (billed) vs cached (avoided)",
    ["source", "type"],
)


# --- Helper wrappers (never crash the app)
def observe_request(start_ts: float, endpoint: str, method: str, status: str):
    try:
        HTTP_REQUEST_LATENCY.labels(endpoint=endpoint).observe(time.time() - start_ts)
        HTTP_REQUEST_COUNT.labels(method=method, endpoint=endpoint, status=status).inc()
    except Exception:
        pass


def observe_execution(start_ts: float, kind: str, outcome: str):
    try:
        EXECUTION_LATENCY.labels(kind=kind).observe(time.time() - start_ts)
        EXECUTIONS.labels(kind=kind, outcome=outcome).inc()
    except Exception:
        pass


def inc_cache_lookup(kind: str, result: str, n: int = 1):
    try:
        if n > 0:
            CACHE_LOOKUPS.labels(kind=kind, result=result).inc(n)
    except Exception:
        pass


def inc_llm_attempt(outcome: str):
    try:
        LLM_ATTEMPTS.labels(outcome=outcome).inc()
    except Exception:
        pass


def add_tokens(source: str, usage):
    try:
        TOKENS.labels(source=source, type="prompt").inc(usage.prompt_tokens)
        TOKENS.labels(source=source, type="completion").inc(usage.completion_tokens)
    except Exception:
        pass


def prometheus_metrics_response() -> Tuple[bytes, str]:
    """Return (body_bytes, content_type) for Prometheus scrape."""
    try:
        return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
    except Exception:
        return b"", CONTENT_TYPE_LATEST
