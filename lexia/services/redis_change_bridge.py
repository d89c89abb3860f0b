"""
Redis pub/sub bridge for the change feed. Lets every API process refresh its own
subscribers when another process writes to the store.
Redis errors are handled internally and never raised to the writer: publish()
returns False and the feed falls back to local delivery.
Channel payload: JSON list of topic strings.
"""
import json
import logging
from collections.abc import Sequence
from typing import Any

from lexia.config import get_settings
from lexia.services.change_feed import ChangeFeed

logger = logging.getLogger(__name__)


def _serialize(topics: Sequence[str]) -> str:
    return json.dumps(list(topics))


def _deserialize(raw: Any) -> list[str]:
    try:
        s = raw.decode() if isinstance(raw, bytes) else raw
        data = json.loads(s)
        if isinstance(data, list):
            return [t for t in data if isinstance(t, str)]
    except (json.JSONDecodeError, TypeError, UnicodeDecodeError):
        pass
    return []


class RedisChangeBridge:
    """PUBLISH on write, SUBSCRIBE in a background task that re-notifies the local feed."""

    def __init__(self, redis_client: Any, feed: ChangeFeed, channel: str | None = None):
        self._redis = redis_client
        self._feed = feed
        self._channel = channel or get_settings().change_channel
        self._listening = False

    @property
    def listening(self) -> bool:
        return self._listening

    async def publish(self, topics: Sequence[str]) -> bool:
        # Without a live listener our own processes would never see the message
        if not self._redis or not self._listening:
            return False
        try:
            await self._redis.publish(self._channel, _serialize(topics))
            return True
        except Exception as e:
            logger.warning("Redis change publish failed on %s: %s", self._channel, e, exc_info=False)
            return False

    async def listen(self) -> None:
        """Run until cancelled: forward every channel message to the local feed."""
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(self._channel)
        self._listening = True
        logger.info("Listening for store changes on %s", self._channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                topics = _deserialize(message.get("data"))
                if topics:
                    await self._feed.notify(*topics)
        except Exception as e:
            logger.warning("Redis change listener stopped: %s", e, exc_info=False)
        finally:
            self._listening = False
            try:
                await pubsub.unsubscribe(self._channel)
                await pubsub.aclose()
            except Exception as e:
                logger.warning("Redis pubsub close error: %s", e)
