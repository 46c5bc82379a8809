"""Backend capability contract and registry.

A backend is anything that satisfies the `Backend` protocol; backends share
no implementation, only this contract. Everything a backend yields is raw,
backend-specific data (plain dicts) that the matching normalizer translates.
"""

import asyncio
import importlib
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from chatters.errors import BackendUnavailable
from chatters.models import ConnectionState, MessageBody

RawEvent = dict[str, Any]


@dataclass(frozen=True)
class HistoryPage:
    """One page of history, older than the cursor that was requested.

    `next_cursor` is the `before_cursor` to pass for the following (older)
    page, or None when the backend knows nothing older.
    """

    items: list[RawEvent]
    next_cursor: Any | None = None


@dataclass(frozen=True)
class SendHandle:
    """Pending send. The outcome arrives later on the backend's event stream."""

    backend_id: str
    conversation_id: str
    native_id: str
    sender_id: str
    timestamp: int


@runtime_checkable
class Backend(Protocol):
    """Capabilities every chat backend provides."""

    backend_id: str
    kind: str

    @property
    def self_id(self) -> str | None:
        """The account's own participant id, known once connected."""
        ...

    async def connect(self) -> None:
        """Establish the transport. Raises BackendUnavailable on failure."""
        ...

    def list_conversations(self) -> AsyncIterator[RawEvent]:
        """Lazy, finite, restartable listing of native conversation summaries."""
        ...

    async def fetch_history(
        self, conversation_id: str, before_cursor: Any | None, limit: int
    ) -> HistoryPage:
        """At most `limit` native messages older than `before_cursor`.

        Raises:
            NotFound: conversation unknown to the backend
            BackendUnavailable: transport failure
        """
        ...

    async def send_message(self, conversation_id: str, body: MessageBody) -> SendHandle:
        """Dispatch a message without waiting for network confirmation."""
        ...

    def events(self) -> AsyncIterator[RawEvent]:
        """Unbounded live event stream; ends only after disconnect()."""
        ...

    def connection_state(self) -> ConnectionState:
        ...

    async def disconnect(self) -> None:
        """Close the transport. Safe to call more than once."""
        ...


BackendFactory = Callable[[str, dict[str, Any]], Backend]


class BackendRegistry:
    """Registry of backend factories by kind."""

    _factories: dict[str, BackendFactory] = {}

    @classmethod
    def register(cls, kind: str, factory: BackendFactory) -> None:
        """Register a factory."""
        cls._factories[kind] = factory

    @classmethod
    def get(cls, kind: str) -> BackendFactory | None:
        """Get factory by kind."""
        return cls._factories.get(kind)

    @classmethod
    def create(cls, kind: str, backend_id: str, options: dict[str, Any] | None = None) -> Backend:
        """Build a backend instance.

        Raises:
            ValueError: if no factory is registered for `kind`
        """
        factory = cls._factories.get(kind)
        if factory is None:
            raise ValueError(f"Unknown backend kind: {kind!r}")
        return factory(backend_id, dict(options or {}))

    @classmethod
    def all_kinds(cls) -> list[str]:
        """List all registered backend kinds."""
        return list(cls._factories.keys())


def resolve_client_factory(path: str) -> Callable[..., Any]:
    """Import a protocol client factory given as 'package.module:callable'."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Client factory must look like 'module:callable', got {path!r}")
    module = importlib.import_module(module_name)
    try:
        factory = getattr(module, attr)
    except AttributeError:
        raise ValueError(f"{module_name} has no attribute {attr!r}") from None
    if not callable(factory):
        raise ValueError(f"{path} is not callable")
    return factory


class _Closed:
    pass


_CLOSED = _Closed()


class RawEventChannel:
    """Queue feeding a backend's events() stream.

    Merges events pumped from a protocol client with events the backend
    generates itself (send outcomes), and turns a lost transport into
    BackendUnavailable for the consumer.
    """

    def __init__(self, backend_id: str) -> None:
        self._backend_id = backend_id
        self._queue: asyncio.Queue[RawEvent | BackendUnavailable | _Closed] = asyncio.Queue()
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    def put(self, raw: RawEvent) -> None:
        if not self._done:
            self._queue.put_nowait(raw)

    def fail(self, reason: str) -> None:
        if not self._done:
            self._done = True
            self._queue.put_nowait(BackendUnavailable(self._backend_id, reason))

    def close(self) -> None:
        if not self._done:
            self._done = True
            self._queue.put_nowait(_CLOSED)

    async def pump(self, source: AsyncIterator[RawEvent]) -> None:
        """Forward a client stream into the channel until it ends or fails."""
        try:
            async for raw in source:
                self.put(raw)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.fail(f"event stream failed: {exc}")
            return
        self.fail("event stream ended")

    async def stream(self) -> AsyncIterator[RawEvent]:
        while True:
            item = await self._queue.get()
            if isinstance(item, _Closed):
                return
            if isinstance(item, BackendUnavailable):
                raise item
            yield item
