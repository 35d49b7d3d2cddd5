import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager

import redis

from leaseledger.core.config import settings

logger = logging.getLogger(__name__)

# Sync client for Celery jobs (created lazily, reused across task runs)
_redis: redis.Redis | None = None


def get_redis() -> redis.Redis:
    global _redis
    if _redis is None:
        _redis = redis.Redis.from_url(settings.redis_url, decode_responses=True)
    return _redis


# ─── Worker locks ──────────────────────────────────────────────────────────────

_LOCK_PREFIX = "leaseledger:worker-lock:"

# Delete only if the stored token is still ours
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


@contextmanager
def worker_lock(name: str, ttl_seconds: int | None = None,
                client: redis.Redis | None = None) -> Iterator[bool]:
    """Hold a deployment-wide lock for a background job.

    Yields True when the lock was acquired, False when another worker holds it.
    The lock expires on its own after ``ttl_seconds`` so a crashed worker never
    blocks the next run forever.
    """
    r = client or get_redis()
    key = f"{_LOCK_PREFIX}{name}"
    token = uuid.uuid4().hex
    ttl = ttl_seconds or settings.worker_lock_ttl_seconds
    acquired = bool(r.set(key, token, nx=True, ex=ttl))
    if not acquired:
        logger.info("Worker lock %s held elsewhere; skipping run", name)
    try:
        yield acquired
    finally:
        if acquired:
            r.eval(_RELEASE_SCRIPT, 1, key, token)
