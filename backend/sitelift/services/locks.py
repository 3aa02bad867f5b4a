"""Per-restaurant optimizer lease.

Only one worker may run an optimization pass for a restaurant at a time.
Uses a Redis key with NX/EX so the lease is shared across processes and
expires on its own if the holder dies. Release only deletes the key while
it still holds the caller's token.
"""
import redis
from typing import Optional
from contextlib import contextmanager
from functools import lru_cache
import uuid

import structlog

from sitelift.config import get_settings
from sitelift.services.errors import OptimizerBusy

logger = structlog.get_logger()

# Delete the key only if it still holds our token, in one round trip
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class RestaurantLock:
    """Redis-based lease keyed by restaurant id."""

    def __init__(self, redis_client: redis.Redis, ttl_seconds: int = 900):
        self.redis = redis_client
        # Lease outlives a slow cycle but frees itself after a crash
        self.ttl_seconds = ttl_seconds
        self._release_script = redis_client.register_script(RELEASE_SCRIPT)

    def _get_lease_key(self, restaurant_id: str) -> str:
        return f"optimizer:lease:{restaurant_id}"

    def acquire(self, restaurant_id: str) -> Optional[str]:
        """
        Try to take the lease.

        Returns:
            Lease token to pass to ``release``, or None if held elsewhere
        """
        token = str(uuid.uuid4())
        acquired = self.redis.set(
            self._get_lease_key(restaurant_id), token, nx=True, ex=self.ttl_seconds
        )
        return token if acquired else None

    def release(self, restaurant_id: str, token: str) -> bool:
        """Release the lease if this token still owns it."""
        released = self._release_script(keys=[self._get_lease_key(restaurant_id)], args=[token])
        if not released:
            # Expired and possibly taken by someone else
            logger.warning("optimizer_lease_lost", restaurant_id=restaurant_id)
            return False
        return True

    def is_held(self, restaurant_id: str) -> bool:
        return bool(self.redis.exists(self._get_lease_key(restaurant_id)))

    @contextmanager
    def hold(self, restaurant_id: str):
        """
        Context manager for one optimization pass.

        Usage:
            with lock.hold(restaurant_id):
                ...

        Raises:
            OptimizerBusy: If another worker holds the lease
        """
        token = self.acquire(restaurant_id)
        if token is None:
            raise OptimizerBusy(f"Optimizer already running for {restaurant_id}")
        try:
            yield token
        finally:
            self.release(restaurant_id, token)


@lru_cache()
def get_redis() -> redis.Redis:
    """Shared Redis client built from settings."""
    return redis.from_url(get_settings().redis_url)


def get_restaurant_lock() -> RestaurantLock:
    settings = get_settings()
    return RestaurantLock(get_redis(), ttl_seconds=settings.optimizer_lock_ttl_seconds)
