# Per-listing mutual exclusion for the admission critical section (overlap check -> insert).
# Two layers: an in-process striped lock, plus a Redis SET NX PX lock across processes when enabled.
from __future__ import annotations

import logging
import os
import threading
import time
from contextlib import contextmanager
from typing import Iterator, Optional
from uuid import uuid4

import redis

from .errors import LockTimeout
from .redis_client import get_redis

logger = logging.getLogger("rinto.locks")

# Maximum wait for a listing lock before the caller gets an InternalError
LOCK_TIMEOUT_SECONDS = float(os.getenv("LOCK_TIMEOUT_SECONDS", "5"))
# Redis lock TTL; keeps a crashed holder from blocking a listing forever
LOCK_TTL_MS = int(os.getenv("LOCK_TTL_MS", "5000"))
# Number of in-process lock stripes; listings hash onto a stripe
LOCK_STRIPES = 64

_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
else
    return 0
end
"""

_stripes = [threading.Lock() for _ in range(LOCK_STRIPES)]


def listing_lock_key(listing_id: int) -> str:
    return f"lock:booking:listing:{listing_id}"


def _local_lock(listing_id: int) -> threading.Lock:
    return _stripes[hash(int(listing_id)) % LOCK_STRIPES]


def _acquire_redis(r: redis.Redis, key: str, token: str, deadline: float) -> Optional[bool]:
    """
    Poll SET NX PX until acquired or the deadline passes.

    Returns True when acquired, False on timeout, None when Redis errored (fail open).
    """
    delay = 0.01
    while True:
        try:
            if r.set(key, token, nx=True, px=LOCK_TTL_MS):
                return True
        except redis.RedisError as exc:
            logger.warning("lock.redis_error", extra={"key": key, "error": str(exc)})
            return None
        if time.monotonic() >= deadline:
            return False
        time.sleep(min(delay, max(0.0, deadline - time.monotonic())))
        delay = min(delay * 2, 0.2)


def _release_redis(r: redis.Redis, key: str, token: str) -> None:
    # Release only if we still own the lock (token matches current value)
    try:
        r.eval(_RELEASE_SCRIPT, 1, key, token)
    except redis.RedisError as exc:
        # The lock expires by TTL
        logger.debug("lock.release_error", extra={"key": key, "error": str(exc)})


@contextmanager
def listing_lock(listing_id: int, timeout: Optional[float] = None) -> Iterator[None]:
    """
    Hold the exclusive booking lock for one listing.

        with listing_lock(listing_id):
            # overlap check + insert + commit

    Raises LockTimeout when either layer cannot be acquired within `timeout` seconds.
    Redis errors fail open: the in-process lock and database guards still apply.
    """
    timeout = LOCK_TIMEOUT_SECONDS if timeout is None else timeout
    key = listing_lock_key(listing_id)
    deadline = time.monotonic() + timeout

    local = _local_lock(listing_id)
    if not local.acquire(timeout=timeout):
        logger.warning("lock.timeout", extra={"key": key, "layer": "local", "timeout": timeout})
        raise LockTimeout(key, timeout)
    try:
        r = get_redis()
        if r is None:
            yield
            return

        token = uuid4().hex
        acquired = _acquire_redis(r, key, token, deadline)
        if acquired is False:
            logger.warning("lock.timeout", extra={"key": key, "layer": "redis", "timeout": timeout})
            raise LockTimeout(key, timeout)
        try:
            yield
        finally:
            if acquired:
                _release_redis(r, key, token)
    finally:
        local.release()
