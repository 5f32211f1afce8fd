"""
Startup checks shared by the API and the worker.

Both processes come up alongside Postgres and Redis containers and poll
them before building services.
"""
import asyncio
from typing import Awaitable, Callable, Optional

import redis.asyncio as aioredis

from services.logging_config import get_logger

logger = get_logger(__name__)


async def wait_until_ready(
    name: str,
    check: Callable[[], Awaitable[None]],
    attempts: int = 30,
    delay: float = 2.0,
    stop: Optional[asyncio.Event] = None,
) -> bool:
    """
    Call check until it returns without raising.

    Returns False when attempts run out or when stop is set between tries.
    """
    for attempt in range(1, attempts + 1):
        if stop is not None and stop.is_set():
            return False
        try:
            await check()
        except Exception as e:
            logger.warning(f"{name} not ready", attempt=attempt, attempts=attempts, error=str(e))
            if attempt < attempts:
                await asyncio.sleep(delay)
            continue

        logger.info(f"{name} ready", attempt=attempt)
        return True

    logger.error(f"{name} unavailable after {attempts} attempts")
    return False


def redis_client(url: str, max_connections: int) -> aioredis.Redis:
    return aioredis.from_url(
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=max_connections,
    )
