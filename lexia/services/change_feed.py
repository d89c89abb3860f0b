"""
Live subscriptions for the conversation store.
Subscribers register a snapshot loader and a callback per topic; every delivery
is the full current snapshot (replace, never a diff). Several writes may be
coalesced into one delivery, and a subscriber never receives a snapshot that
was loaded before one it already has. With a bridge attached, publishes go
through Redis so that subscribers in other processes are refreshed too.
"""
import inspect
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Protocol

logger = logging.getLogger(__name__)

SnapshotLoader = Callable[[], Awaitable[list]]
SnapshotCallback = Callable[[list], Any]
Unsubscribe = Callable[[], None]


class ChangeBridge(Protocol):
    async def publish(self, topics: Sequence[str]) -> bool:
        """Fan topics out to every process. False when the bridge could not publish."""
        ...


def messages_topic(user_id: str, conversation_id: str) -> str:
    return f"messages:{user_id}:{conversation_id}"


def conversations_topic(user_id: str) -> str:
    return f"conversations:{user_id}"


class _Subscription:
    __slots__ = ("loader", "callback", "delivered")

    def __init__(self, loader: SnapshotLoader, callback: SnapshotCallback):
        self.loader = loader
        self.callback = callback
        # Version of the newest snapshot handed to callback
        self.delivered = 0


class ChangeFeed:
    """In-process observer registry keyed by topic."""

    def __init__(self, bridge: ChangeBridge | None = None):
        self._subscribers: dict[str, list[_Subscription]] = defaultdict(list)
        self._bridge = bridge
        self._versions: dict[str, int] = defaultdict(int)

    def attach_bridge(self, bridge: ChangeBridge | None) -> None:
        self._bridge = bridge

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, ()))

    async def subscribe(self, topic: str, loader: SnapshotLoader, callback: SnapshotCallback) -> Unsubscribe:
        """Register and deliver the current snapshot immediately. Returns the unsubscribe handle."""
        sub = _Subscription(loader, callback)
        self._subscribers[topic].append(sub)

        def unsubscribe() -> None:
            subs = self._subscribers.get(topic)
            if not subs:
                return
            try:
                subs.remove(sub)
            except ValueError:
                pass
            if not subs:
                self._subscribers.pop(topic, None)
                self._versions.pop(topic, None)

        version = self._next_version(topic)
        await self._deliver(topic, sub, await loader(), version)
        return unsubscribe

    async def publish(self, *topics: str) -> None:
        """Announce that the record sets behind topics changed."""
        if self._bridge is not None and await self._bridge.publish(topics):
            return
        await self.notify(*topics)

    async def notify(self, *topics: str) -> None:
        """Reload each topic once and deliver the snapshot to every local subscriber."""
        for topic in dict.fromkeys(topics):
            subs = list(self._subscribers.get(topic, ()))
            if not subs:
                continue
            version = self._next_version(topic)
            snapshot = await subs[0].loader()
            for sub in subs:
                await self._deliver(topic, sub, snapshot, version)

    def _next_version(self, topic: str) -> int:
        self._versions[topic] += 1
        return self._versions[topic]

    async def _deliver(self, topic: str, sub: _Subscription, snapshot: list, version: int) -> None:
        # Loads can finish out of order; a snapshot older than one already delivered is stale
        if version <= sub.delivered:
            return
        sub.delivered = version
        try:
            result = sub.callback(list(snapshot))
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning("Subscriber callback failed on %s: %s", topic, e, exc_info=True)
