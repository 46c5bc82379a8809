"""Backend adapter for a Matrix-style federated homeserver messenger.

The homeserver client (login, sync, end-to-end encryption) is injected and
opaque. Conversation ids are room ids. Raw events are client-server API
events with their `room_id` attached; history pages come from the
`/messages` endpoint walking backwards, so their chunks are newest-first.

Events generated here:

    {"type": "chatters.send_result", "room_id": ..., "txn_id": ..., "event_id"?: ..., "error"?: ...}
"""

import asyncio
import itertools
import secrets
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

logger = get_logger("backends.matrix")


class MatrixClient(Protocol):
    """What the adapter needs from a homeserver client."""

    async def connect(self) -> None: ...

    async def whoami(self) -> str: ...

    async def joined_rooms(self) -> list[dict[str, Any]]: ...

    async def room_messages(self, room_id: str, start: str | None, limit: int) -> dict[str, Any]: ...

    async def room_send(self, room_id: str, content: dict[str, Any], txn_id: str) -> str: ...

    def sync_events(self) -> AsyncIterator[dict[str, Any]]: ...

    async def close(self) -> None: ...


class MatrixBackend:
    """Backend over an injected MatrixClient."""

    kind = "matrix"

    def __init__(self, backend_id: str, client: MatrixClient) -> None:
        self.backend_id = backend_id
        self._client = client
        self._self_id: str | None = None
        self._state = ConnectionState()
        self._channel: RawEventChannel | None = None
        self._pump: asyncio.Task[None] | None = None
        self._sends: set[asyncio.Task[None]] = set()
        self._txn_counter = itertools.count()
        self._known_rooms: set[str] = set()

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
        self._pump = asyncio.create_task(
            self._channel.pump(self._client.sync_events()), name=f"matrix-pump:{self.backend_id}"
        )
        self._state = ConnectionState(ConnectionStatus.LIVE)
        logger.info("Connected: backend=%s user=%s", self.backend_id, self._self_id)

    async def list_conversations(self) -> AsyncIterator[RawEvent]:
        self._require_connected()
        try:
            rooms = await self._client.joined_rooms()
        except Exception as exc:
            raise BackendUnavailable(self.backend_id, f"listing rooms failed: {exc}") from exc
        for room in rooms:
            self._known_rooms.add(room["room_id"])
            yield dict(room)

    async def fetch_history(
        self, conversation_id: str, before_cursor: Any | None, limit: int
    ) -> HistoryPage:
        self._require_connected()
        try:
            response = await self._client.room_messages(conversation_id, before_cursor, limit)
        except (NotFound, BackendUnavailable):
            raise
        except LookupError:
            raise NotFound(self.backend_id, conversation_id) from None
        except Exception as exc:
            raise BackendUnavailable(self.backend_id, f"room history failed: {exc}") from exc
        chunk = [dict(event, room_id=conversation_id) for event in response.get("chunk", [])]
        return HistoryPage(items=chunk, next_cursor=response.get("end"))

    def _new_txn_id(self) -> str:
        return f"chatters.{now_ms()}.{next(self._txn_counter)}.{secrets.token_hex(4)}"

    async def send_message(self, conversation_id: str, body: MessageBody) -> SendHandle:
        self._require_connected()
        if self._known_rooms and conversation_id not in self._known_rooms:
            raise NotFound(self.backend_id, conversation_id)

        content: dict[str, Any] = {"msgtype": "m.text", "body": body.text}
        if body.quote is not None:
            content["m.relates_to"] = {"m.in_reply_to": {"event_id": body.quote.native_id}}
        txn_id = self._new_txn_id()

        task = asyncio.create_task(self._deliver(conversation_id, content, txn_id))
        self._sends.add(task)
        task.add_done_callback(self._sends.discard)

        # Attachments go out as separate m.file events under their own transactions
        for attachment in body.attachments:
            if attachment.handle is None:
                continue
            file_content = {
                "msgtype": "m.file",
                "body": attachment.name or "attachment",
                "url": attachment.handle,
                "info": {"mimetype": attachment.mime_type, "size": attachment.size},
            }
            file_task = asyncio.create_task(self._deliver(conversation_id, file_content, self._new_txn_id()))
            self._sends.add(file_task)
            file_task.add_done_callback(self._sends.discard)

        return SendHandle(self.backend_id, conversation_id, txn_id, self._self_id or "", now_ms())

    async def _deliver(self, room_id: str, content: dict[str, Any], txn_id: str) -> None:
        result: dict[str, Any] = {"type": "chatters.send_result", "room_id": room_id, "txn_id": txn_id}
        try:
            result["event_id"] = await self._client.room_send(room_id, content, txn_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Send failed: backend=%s room=%s error=%s", self.backend_id, room_id, exc)
            result["error"] = str(exc)
        if self._channel is not None:
            self._channel.put(result)

    def events(self) -> AsyncIterator[RawEvent]:
        return self._require_connected().stream()

    def connection_state(self) -> ConnectionState:
        if self._channel is not None and self._channel.done and self._state.status is ConnectionStatus.LIVE:
            return ConnectionState.degraded("sync lost")
        return self._state

    async def disconnect(self) -> None:
        if self._channel is not None:
            self._channel.close()
        pending = [t for t in [self._pump, *self._sends] if t is not None]
        for task in pending:
            if not task.done():
                task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._pump = None
        try:
            await self._client.close()
        except Exception:
            logger.warning("Error closing client: backend=%s", self.backend_id, exc_info=True)
        self._state = ConnectionState()


def create_matrix_backend(backend_id: str, options: dict[str, Any]) -> MatrixBackend:
    """Factory used by BackendRegistry for `kind: matrix`.

    Options:
        client: 'module:callable' returning a MatrixClient
        client_options: keyword arguments for that callable
    """
    if not options.get("client"):
        raise ValueError(f"Backend {backend_id}: matrix backends need a 'client' factory")
    factory = resolve_client_factory(options["client"])
    return MatrixBackend(backend_id, factory(**options.get("client_options", {})))
