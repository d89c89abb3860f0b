"""
Async Redis connection used only by the change-feed bridge. No Redis means live
subscriptions are delivered in-process, which is enough for a single API worker.
"""
import logging
from typing import Any

from redis.asyncio import Redis

from lexia.config import get_settings
from lexia.services.change_feed import ChangeFeed
from lexia.services.redis_change_bridge import RedisChangeBridge

logger = logging.getLogger(__name__)

_redis_client: Any = None


def _display_url(url: str) -> str:
    # Never log credentials embedded in the URL
    return url.rsplit("@", 1)[-1]


async def get_redis_client(url: str | None = None) -> Any:
    """Shared client for url (default: settings.redis_url); None when unset or unreachable."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client
    url = (url if url is not None else get_settings().redis_url).strip()
    if not url:
        return None
    client = Redis.from_url(url, decode_responses=True)
    try:
        await client.ping()
    except Exception as e:
        logger.warning("Redis at %s unreachable, change feed stays local: %s", _display_url(url), e)
        await client.aclose()
        return None
    logger.info("Change feed bridged through Redis at %s", _display_url(url))
    _redis_client = client
    return client


def build_change_bridge(client: Any, feed: ChangeFeed, channel: str | None = None) -> RedisChangeBridge:
    return RedisChangeBridge(client, feed, channel or get_settings().change_channel)


async def close_redis() -> None:
    global _redis_client
    client, _redis_client = _redis_client, None
    if client is None:
        return
    try:
        await client.aclose()
    except Exception as e:
        logger.warning("Redis close error: %s", e)
