"""
Events and metrics.

  - Prometheus counters for binds, redeploys and cache volume activity
  - Redis Streams + PubSub for real-time consumers (optional, graceful
    degradation when REDIS_URL is unset or Redis is down)
"""

import json
import logging

import redis
from prometheus_client import Counter

from control_plane.config import settings
from control_plane.resources import format_timestamp, utcnow

logger = logging.getLogger("telemetry")

STREAM_MAXLEN = 100
EVENTS_CHANNEL = "controlplane:events"

# ---------------------------------------------------------------------------
# Prometheus metrics
# ---------------------------------------------------------------------------

BIND_REQUESTS = Counter(
    "control_plane_bind_requests_total",
    "Service bind requests by outcome",
    ["operation", "result"],
)
REDEPLOYS = Counter(
    "control_plane_redeploys_total",
    "Redeploy signals issued to the release manager",
)
CACHE_RECONCILES = Counter(
    "control_plane_cache_reconciles_total",
    "Cache volume reconcile outcomes",
    ["action"],
)
CACHE_DELETIONS = Counter(
    "control_plane_cache_volumes_deleted_total",
    "Stale cache volumes deleted",
)
CACHE_DELETION_FAILURES = Counter(
    "control_plane_cache_volume_deletion_failures_total",
    "Stale cache volume deletions that failed",
)


def record_bind(operation: str, result: str):
    BIND_REQUESTS.labels(operation=operation, result=result).inc()


def record_redeploy():
    REDEPLOYS.inc()


def record_reconcile(action: str):
    CACHE_RECONCILES.labels(action=action).inc()


def record_cache_deletion(ok: bool = True):
    if ok:
        CACHE_DELETIONS.inc()
    else:
        CACHE_DELETION_FAILURES.inc()


# ---------------------------------------------------------------------------
# Redis event stream
# ---------------------------------------------------------------------------

_redis_client = None


def _get_redis():
    """Lazy-init Redis client. Returns None if unavailable."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client
    if not settings.REDIS_URL:
        return None
    try:
        _redis_client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
        _redis_client.ping()
        logger.info(f"Redis connected: {settings.REDIS_URL}")
        return _redis_client
    except redis.RedisError as e:
        logger.warning(f"Redis unavailable (non-fatal): {e}")
        _redis_client = None
        return None


def redis_status() -> str:
    r = _get_redis()
    if not r:
        return "disabled"
    try:
        r.ping()
        return "connected"
    except redis.RedisError:
        return "disconnected"


def publish_event(subject: str, event_type: str, message: str):
    """Publish an event for `subject` (e.g. "ns/app") to its stream and the global channel."""
    r = _get_redis()
    if not r:
        return
    event = {
        "subject": subject,
        "type": event_type,
        "message": message,
        "timestamp": format_timestamp(utcnow()),
    }
    try:
        r.xadd(f"controlplane:events:{subject}", event, maxlen=STREAM_MAXLEN)
        r.publish(EVENTS_CHANNEL, json.dumps(event))
    except redis.RedisError as e:
        logger.debug(f"Redis publish failed (non-fatal): {e}")
