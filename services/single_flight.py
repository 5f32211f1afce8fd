"""
Single Flight Lock
Version: 1.0

Guarantees at most one run of a job at a time.
Redis SET NX EX across processes, asyncio.Lock within one process.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from errors import RunInProgressError

logger = logging.getLogger(__name__)

# Delete the key only if we still own it.
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class SingleFlight:
    """Non-blocking run lock. A second caller gets RunInProgressError."""

    def __init__(self, redis_client=None, ttl: int = 300, prefix: str = "lock"):
        self.redis = redis_client
        self.ttl = ttl
        self.prefix = prefix
        self._local_locks: Dict[str, asyncio.Lock] = {}

    @asynccontextmanager
    async def hold(self, name: str) -> AsyncIterator[str]:
        """
        Hold the lock for the duration of the block.

        Raises:
            RunInProgressError: If another run holds the lock
        """
        local = self._local_locks.setdefault(name, asyncio.Lock())
        if local.locked():
            raise RunInProgressError(f"{name} is already running", {"lock": name})

        async with local:
            token = await self._acquire_remote(name)
            try:
                yield token
            finally:
                await self._release_remote(name, token)

    async def _acquire_remote(self, name: str) -> Optional[str]:
        if self.redis is None:
            return None

        key = f"{self.prefix}:{name}"
        token = uuid.uuid4().hex
        try:
            acquired = await self.redis.set(key, token, nx=True, ex=self.ttl)
        except Exception as e:
            logger.warning(f"Redis lock unavailable for {name}, using process lock only: {e}")
            return None

        if not acquired:
            holder = await self.redis.get(key)
            logger.info(f"{name} already running (held by {holder})")
            raise RunInProgressError(f"{name} is already running", {"lock": name})

        logger.debug(f"Lock acquired: {key}")
        return token

    async def _release_remote(self, name: str, token: Optional[str]) -> None:
        if self.redis is None or token is None:
            return

        key = f"{self.prefix}:{name}"
        try:
            await self.redis.eval(_RELEASE_SCRIPT, 1, key, token)
            logger.debug(f"Lock released: {key}")
        except Exception as e:
            logger.warning(f"Lock release error for {key}: {e}")
