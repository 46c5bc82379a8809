"""Backend adapter for a Signal-style end-to-end encrypted messenger.

Cryptography, device linking and transport live in the protocol client,
which is injected and opaque to chatters. The adapter only maps the client's
calls onto the backend contract.

Conversation ids are "user:<uuid>" for contacts and "group:<master key hex>"
for groups. Raw events are the client's envelopes:

    {"kind": "content", "sender": uuid, "timestamp": ms, "body": {...}}
    {"kind": "queue_empty"} / {"kind": "contacts"}

plus envelopes generated here:

    {"kind": "send_result", "thread": {...}, "timestamp": ms, "ok": bool, "error"?: str}
"""

import asyncio
from collections.abc import AsyncIterator
from typing import Any, Protocol

from chatters.backends.base import (
    HistoryPage,
    RawEvent,
    RawEventChannel,
    SendHandle,
    resolve_client_factory,
)
from chatters.errors import BackendUnavailable, NotFound
from chatters.logging import get_logger
from chatters.models import ConnectionState, ConnectionStatus, MessageBody, now_ms

logger = get_logger("backends.signal")


class SignalClient(Protocol):
    """What the adapter needs from a Signal protocol client."""

    async def connect(self) -> None: ...

    async def whoami(self) -> str: ...

    async def contacts(self) -> list[dict[str, Any]]: ...

    async def groups(self) -> list[dict[str, Any]]: ...

    async def thread_messages(
        self, thread: dict[str, str], before_timestamp: int | None, limit: int
    ) -> list[dict[str, Any]]: ...

    async def send(self, thread: dict[str, str], content: dict[str, Any], timestamp: int) -> None: ...

    def receive(self) -> AsyncIterator[dict[str, Any]]: ...

    async def close(self) -> None: ...


def thread_for(conversation_id: str) -> dict[str, str]:
    """Map a conversation id back to the client's thread selector."""
    prefix, _, value = conversation_id.partition(":")
    if prefix == "user" and value:
        return {"contact": value}
    if prefix == "group" and value:
        return {"group": value}
    raise ValueError(f"Not a Signal conversation id: {conversation_id!r}")


class SignalBackend:
    """Backend over an injected SignalClient."""

    kind = "signal"

    def __init__(self, backend_id: str, client: SignalClient) -> None:
        self.backend_id = backend_id
        self._client = client
        self._self_id: str | None = None
        self._state = ConnectionState()
        self._channel: RawEventChannel | None = None
        self._pump: asyncio.Task[None] | None = None
        self._sends: set[asyncio.Task[None]] = set()
        self._last_sent_ts = 0

    @property
    def self_id(self) -> str | None:
        return self._self_id

    def _require_connected(self) -> RawEventChannel:
        if self._channel is None or self._channel.done:
            raise BackendUnavailable(self.backend_id, "not connected")
        return self._channel

    async def connect(self) -> None:
        self._state = ConnectionState(ConnectionStatus.CONNECTING)
        try:
            await self._client.connect()
            self._self_id = await self._client.whoami()
        except BackendUnavailable:
            self._state = ConnectionState.degraded("connect failed")
            raise
        except Exception as exc:
            self._state = ConnectionState.degraded("connect failed")
            raise BackendUnavailable(self.backend_id, f"connect failed: {exc}") from exc
        self._channel = RawEventChannel(self.backend_id)
        self._pump = asyncio.create_task(self._channel.pump(self._client.receive()), name=f"signal-pump:{self.backend_id}")
        self._state = ConnectionState(ConnectionStatus.LIVE)
        logger.info("Connected: backend=%s self=%s", self.backend_id, self._self_id)

    async def list_conversations(self) -> AsyncIterator[RawEvent]:
        self._require_connected()
        try:
            contacts = await self._client.contacts()
            groups = await self._client.groups()
        except Exception as exc:
            raise BackendUnavailable(self.backend_id, f"listing failed: {exc}") from exc
        for contact in contacts:
            yield {"kind": "contact", **contact}
        for group in groups:
            yield {"kind": "group", **group}

    async def fetch_history(
        self, conversation_id: str, before_cursor: Any | None, limit: int
    ) -> HistoryPage:
        self._require_connected()
        try:
            thread = thread_for(conversation_id)
        except ValueError:
            raise NotFound(self.backend_id, conversation_id) from None
        try:
            envelopes = await self._client.thread_messages(thread, before_cursor, limit)
        except (NotFound, BackendUnavailable):
            raise
        except LookupError:
            raise NotFound(self.backend_id, conversation_id) from None
        except Exception as exc:
            raise BackendUnavailable(self.backend_id, f"history failed: {exc}") from exc
        if not envelopes:
            return HistoryPage(items=[], next_cursor=None)
        oldest = min(int(e.get("timestamp", 0)) for e in envelopes)
        return HistoryPage(items=list(envelopes), next_cursor=oldest)

    async def send_message(self, conversation_id: str, body: MessageBody) -> SendHandle:
        self._require_connected()
        try:
            thread = thread_for(conversation_id)
        except ValueError:
            raise NotFound(self.backend_id, conversation_id) from None

        # Signal identifies a message by author and sent timestamp
        timestamp = max(now_ms(), self._last_sent_ts + 1)
        self._last_sent_ts = timestamp
        data_message: dict[str, Any] = {"body": body.text, "timestamp": timestamp}
        if body.attachments:
            data_message["attachments"] = [
                {"content_type": a.mime_type, "size": a.size, "file_name": a.name, "cdn_key": a.handle}
                for a in body.attachments
                if a.handle
            ]
        if body.quote is not None:
            author, _, quoted_ts = body.quote.native_id.rpartition(":")
            data_message["quote"] = {
                "id": int(quoted_ts) if quoted_ts.isdigit() else None,
                "author_aci": author or body.quote.sender_id,
                "text": body.quote.text,
            }

        task = asyncio.create_task(self._deliver(thread, {"data_message": data_message}, timestamp))
        self._sends.add(task)
        task.add_done_callback(self._sends.discard)
        return SendHandle(
            self.backend_id,
            conversation_id,
            f"{self._self_id}:{timestamp}",
            self._self_id or "",
            timestamp,
        )

    async def _deliver(self, thread: dict[str, str], content: dict[str, Any], timestamp: int) -> None:
        result: dict[str, Any] = {"kind": "send_result", "thread": thread, "timestamp": timestamp}
        try:
            await self._client.send(thread, content, timestamp)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Send failed: backend=%s timestamp=%d error=%s", self.backend_id, timestamp, exc)
            result.update(ok=False, error=str(exc))
        else:
            result["ok"] = True
        if self._channel is not None:
            self._channel.put(result)

    def events(self) -> AsyncIterator[RawEvent]:
        return self._require_connected().stream()

    def connection_state(self) -> ConnectionState:
        if self._channel is not None and self._channel.done and self._state.status is ConnectionStatus.LIVE:
            return ConnectionState.degraded("event stream lost")
        return self._state

    async def disconnect(self) -> None:
        if self._channel is not None:
            self._channel.close()
        for task in [self._pump, *self._sends]:
            if task is not None and not task.done():
                task.cancel()
        await asyncio.gather(*(t for t in [self._pump, *self._sends] if t is not None), return_exceptions=True)
        self._pump = None
        try:
            await self._client.close()
        except Exception:
            logger.warning("Error closing client: backend=%s", self.backend_id, exc_info=True)
        self._state = ConnectionState()


def create_signal_backend(backend_id: str, options: dict[str, Any]) -> SignalBackend:
    """Factory used by BackendRegistry for `kind: signal`.

    Options:
        client: 'module:callable' returning a SignalClient
        client_options: keyword arguments for that callable
    """
    if not options.get("client"):
        raise ValueError(f"Backend {backend_id}: signal backends need a 'client' factory")
    factory = resolve_client_factory(options["client"])
    return SignalBackend(backend_id, factory(**options.get("client_options", {})))
