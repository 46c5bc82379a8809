"""Tests for the Signal-style backend adapter."""

import asyncio
from typing import Any

import pytest
import pytest_asyncio

from chatters.backends import BackendRegistry, SignalBackend
from chatters.backends.signal import thread_for
from chatters.errors import BackendUnavailable, NotFound
from chatters.models import Attachment, ConnectionStatus, MessageBody, Quote

ME = "me-uuid"
BOB = "bob-uuid"


class FakeSignalClient:
    """In-memory stand-in for a Signal protocol client."""

    def __init__(self, fail_connect: bool = False, fail_send: bool = False) -> None:
        self.fail_connect = fail_connect
        self.fail_send = fail_send
        self.incoming: asyncio.Queue[Any] = asyncio.Queue()
        self.sent: list[tuple[dict, dict, int]] = []
        self.closed = False
        self.history = [
            {"kind": "content", "sender": BOB, "timestamp": ts, "body": {"data_message": {"body": f"#{ts}"}}}
            for ts in (100, 200, 300)
        ]

    async def connect(self) -> None:
        if self.fail_connect:
            raise ConnectionRefusedError("refused")

    async def whoami(self) -> str:
        return ME

    async def contacts(self) -> list[dict[str, Any]]:
        return [{"uuid": BOB, "name": "Bob"}]

    async def groups(self) -> list[dict[str, Any]]:
        return [{"master_key": "abcd", "title": "Climbing", "members": [ME, BOB]}]

    async def thread_messages(self, thread: dict[str, str], before_timestamp: int | None, limit: int) -> list:
        if thread != {"contact": BOB}:
            raise LookupError(thread)
        older = [e for e in self.history if before_timestamp is None or e["timestamp"] < before_timestamp]
        return older[-limit:]

    async def send(self, thread: dict[str, str], content: dict[str, Any], timestamp: int) -> None:
        if self.fail_send:
            raise RuntimeError("rate limited")
        self.sent.append((thread, content, timestamp))

    async def receive(self):
        while True:
            item = await self.incoming.get()
            if isinstance(item, Exception):
                raise item
            yield item

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def client() -> FakeSignalClient:
    return FakeSignalClient()


@pytest_asyncio.fixture
async def backend(client: FakeSignalClient) -> SignalBackend:
    backend = SignalBackend("sig", client)
    await backend.connect()
    yield backend
    await backend.disconnect()


class TestThreadFor:
    def test_maps_conversation_ids(self) -> None:
        assert thread_for("user:abc") == {"contact": "abc"}
        assert thread_for("group:ff") == {"group": "ff"}

    @pytest.mark.parametrize("value", ["abc", "user:", "channel:x"])
    def test_rejects_other_ids(self, value: str) -> None:
        with pytest.raises(ValueError):
            thread_for(value)


class TestSignalBackend:
    """Tests for SignalBackend."""

    def test_factory_resolves_client(self) -> None:
        backend = BackendRegistry.create("signal", "sig", {"client": "test_backends_signal:FakeSignalClient"})
        assert isinstance(backend, SignalBackend)

    @pytest.mark.asyncio
    async def test_connect_failure(self) -> None:
        backend = SignalBackend("sig", FakeSignalClient(fail_connect=True))
        with pytest.raises(BackendUnavailable, match="refused"):
            await backend.connect()
        assert backend.connection_state().status is ConnectionStatus.DEGRADED

    @pytest.mark.asyncio
    async def test_connect_learns_own_id(self, backend: SignalBackend) -> None:
        assert backend.self_id == ME
        assert backend.connection_state().status is ConnectionStatus.LIVE

    @pytest.mark.asyncio
    async def test_lists_contacts_and_groups(self, backend: SignalBackend) -> None:
        summaries = [raw async for raw in backend.list_conversations()]
        assert [s["kind"] for s in summaries] == ["contact", "group"]

    @pytest.mark.asyncio
    async def test_history_cursor_is_oldest_timestamp(self, backend: SignalBackend) -> None:
        page = await backend.fetch_history(f"user:{BOB}", None, 2)
        assert [e["timestamp"] for e in page.items] == [200, 300]
        assert page.next_cursor == 200
        older = await backend.fetch_history(f"user:{BOB}", page.next_cursor, 2)
        assert [e["timestamp"] for e in older.items] == [100]

    @pytest.mark.asyncio
    async def test_empty_history_has_no_cursor(self, backend: SignalBackend) -> None:
        page = await backend.fetch_history(f"user:{BOB}", 50, 2)
        assert page.items == []
        assert page.next_cursor is None

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, backend: SignalBackend) -> None:
        with pytest.raises(NotFound):
            await backend.fetch_history("user:nobody", None, 2)
        with pytest.raises(NotFound):
            await backend.fetch_history("garbage", None, 2)

    @pytest.mark.asyncio
    async def test_send_reports_outcome_on_stream(self, backend: SignalBackend, client: FakeSignalClient) -> None:
        body = MessageBody(
            "hi",
            attachments=(Attachment("image/png", 10, name="p.png", handle="cdn-1"),),
            quote=Quote(f"{BOB}:300", BOB, "#300"),
        )
        handle = await backend.send_message(f"user:{BOB}", body)
        assert handle.native_id == f"{ME}:{handle.timestamp}"
        result = await asyncio.wait_for(anext(backend.events()), 1)
        assert result == {"kind": "send_result", "thread": {"contact": BOB}, "timestamp": handle.timestamp, "ok": True}
        [(_, content, _)] = client.sent
        data_message = content["data_message"]
        assert data_message["quote"] == {"id": 300, "author_aci": BOB, "text": "#300"}
        assert data_message["attachments"][0]["cdn_key"] == "cdn-1"

    @pytest.mark.asyncio
    async def test_sends_in_the_same_millisecond_get_distinct_ids(
        self, backend: SignalBackend, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr("chatters.backends.signal.now_ms", lambda: 5000)
        first = await backend.send_message(f"user:{BOB}", MessageBody("one"))
        second = await backend.send_message(f"user:{BOB}", MessageBody("two"))
        assert (first.timestamp, second.timestamp) == (5000, 5001)
        assert first.native_id != second.native_id

    @pytest.mark.asyncio
    async def test_failed_send(self, client: FakeSignalClient) -> None:
        client.fail_send = True
        backend = SignalBackend("sig", client)
        await backend.connect()
        handle = await backend.send_message(f"user:{BOB}", MessageBody("hi"))
        result = await asyncio.wait_for(anext(backend.events()), 1)
        assert result["timestamp"] == handle.timestamp
        assert result["ok"] is False
        assert result["error"] == "rate limited"
        await backend.disconnect()

    @pytest.mark.asyncio
    async def test_receive_failure_degrades(self, backend: SignalBackend, client: FakeSignalClient) -> None:
        stream = backend.events()
        client.incoming.put_nowait({"kind": "queue_empty"})
        client.incoming.put_nowait(ConnectionResetError("socket closed"))
        assert await asyncio.wait_for(anext(stream), 1) == {"kind": "queue_empty"}
        with pytest.raises(BackendUnavailable):
            await asyncio.wait_for(anext(stream), 1)
        assert backend.connection_state().status is ConnectionStatus.DEGRADED

    @pytest.mark.asyncio
    async def test_disconnect_closes_client(self, client: FakeSignalClient) -> None:
        backend = SignalBackend("sig", client)
        await backend.connect()
        stream = backend.events()
        await backend.disconnect()
        assert client.closed
        assert [raw async for raw in stream] == []
        with pytest.raises(BackendUnavailable):
            backend.events()
