"""Redis cycle leases: keep replicas from running the same cycle at once.

A lease is ``SET key token NX EX ttl``; release deletes the key only if it
still holds our token, so an expired lease taken over by another replica is
never released by the previous owner.
"""

import secrets

from loguru import logger
from redis.asyncio import Redis

LEASE_KEY_PREFIX = "vetting:cycle_lease:"

_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


def connect_redis(redis_url: str) -> Redis | None:
    if not redis_url:
        return None
    return Redis.from_url(redis_url, decode_responses=True)


class CycleLease:
    """Cross-process lease for one cycle kind."""

    def __init__(self, redis: Redis, name: str, ttl_sec: int) -> None:
        self._redis = redis
        self._key = f"{LEASE_KEY_PREFIX}{name}"
        self._ttl = ttl_sec
        self._token: str | None = None

    async def acquire(self) -> bool:
        token = secrets.token_hex(8)
        ok = await self._redis.set(self._key, token, nx=True, ex=self._ttl)
        if ok:
            self._token = token
            return True
        logger.debug(f"[LEASE] {self._key} held elsewhere")
        return False

    async def release(self) -> None:
        if self._token is None:
            return
        try:
            await self._redis.eval(_RELEASE_SCRIPT, 1, self._key, self._token)
        finally:
            self._token = None
