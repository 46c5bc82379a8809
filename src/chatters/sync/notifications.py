"""Change-notification feed consumed by the interface layer.

Publishing never blocks. Each subscription buffers a bounded number of
changes per conversation; when a conversation overflows its buffer, its
pending changes collapse into one CONVERSATION_CHANGED entry. A backend
that overflows keeps only its latest CONNECTION_CHANGED entry. State is
always in the store, so only notification granularity is lost.
"""

import asyncio
import threading
from collections import OrderedDict
from collections.abc import AsyncIterator

from chatters.logging import get_logger
from chatters.models import Change, ChangeKind, ConversationKey

logger = get_logger("notifications")

DEFAULT_BUFFER_PER_CONVERSATION = 64

# Bucket for changes that do not belong to a conversation (connection state)
_BucketKey = ConversationKey | tuple[str, str]


def _bucket(change: Change) -> _BucketKey:
    if change.key is not None:
        return change.key
    return ("backend", change.backend_id)


class Subscription:
    """One consumer's view of the change stream.

    Use `poll()` from a redraw loop, or `await get()` / `async for` from a
    coroutine.
    """

    def __init__(self, feed: "ChangeFeed", buffer_per_conversation: int) -> None:
        self._feed = feed
        self._limit = max(1, buffer_per_conversation)
        self._lock = threading.Lock()
        self._pending: OrderedDict[_BucketKey, list[Change]] = OrderedDict()
        self._coalesced: set[_BucketKey] = set()
        self._wakeup = asyncio.Event()
        self._closed = False
        self.coalesce_count = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def _push(self, change: Change) -> None:
        bucket = _bucket(change)
        with self._lock:
            if self._closed:
                return
            if bucket in self._coalesced:
                if change.key is None:
                    self._pending[bucket] = [change]
            else:
                pending = self._pending.setdefault(bucket, [])
                if len(pending) < self._limit:
                    pending.append(change)
                else:
                    # a backend bucket keeps only its latest connection change
                    if change.key is None:
                        self._pending[bucket] = [change]
                    else:
                        self._pending[bucket] = [
                            Change(ChangeKind.CONVERSATION_CHANGED, change.backend_id, change.key)
                        ]
                    self._coalesced.add(bucket)
                    self.coalesce_count += 1
                    logger.debug("Coalesced notifications: bucket=%s", bucket)
        self._wakeup.set()

    def pending_count(self) -> int:
        with self._lock:
            return sum(len(changes) for changes in self._pending.values())

    def poll(self) -> list[Change]:
        """Drain everything pending without waiting, oldest conversation first."""
        with self._lock:
            changes = [change for bucket in self._pending.values() for change in bucket]
            self._pending.clear()
            self._coalesced.clear()
            self._wakeup.clear()
        return changes

    async def get(self) -> list[Change]:
        """Wait until at least one change is pending, then drain.

        Returns an empty list once the subscription is closed.
        """
        while True:
            changes = self.poll()
            if changes or self._closed:
                return changes
            await self._wakeup.wait()

    async def __aiter__(self) -> AsyncIterator[list[Change]]:
        while True:
            changes = await self.get()
            if not changes:
                return
            yield changes

    def close(self) -> None:
        with self._lock:
            self._closed = True
        self._wakeup.set()
        self._feed.unsubscribe(self)


class ChangeFeed:
    """Fan-out of store changes to all subscriptions."""

    def __init__(self, buffer_per_conversation: int = DEFAULT_BUFFER_PER_CONVERSATION) -> None:
        self._buffer = buffer_per_conversation
        self._subscriptions: list[Subscription] = []

    def subscribe(self) -> Subscription:
        subscription = Subscription(self, self._buffer)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish(self, changes: list[Change]) -> None:
        for subscription in list(self._subscriptions):
            for change in changes:
                subscription._push(change)

    def close(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.close()
