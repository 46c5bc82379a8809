"""Synchronization engine.

Owns one supervisor task per backend. A supervisor drives its backend
through Connecting -> SyncingHistory -> Live, feeds raw events through the
backend's normalizer, stamps and routes the resulting mutations to the
per-conversation dispatch lanes, and on transport failure goes Degraded and
reconnects with exponential backoff. The store is only ever mutated from
the lanes (and from the engine's own maintenance calls).
"""

import asyncio
import random
import time
from dataclasses import replace

from chatters.backends.base import Backend, SendHandle
from chatters.config import SyncConfig
from chatters.errors import BackendUnavailable, NotFound, SendFailed, StoreInvariantError
from chatters.hooks import Hooks
from chatters.logging import get_logger
from chatters.models import (
    Change,
    ChangeKind,
    ConnectionState,
    ConnectionStatus,
    ConversationKey,
    DeliveryState,
    MessageBody,
)
from chatters.mutations import (
    AppendMessage,
    ConversationMutation,
    Mutation,
    UpdateConnectionState,
    UpdateDeliveryState,
    UpsertConversation,
)
from chatters.normalizers import Normalizer, NormalizerRegistry
from chatters.store import ConversationStore
from chatters.sync.lanes import DispatchLanes
from chatters.sync.notifications import ChangeFeed, Subscription

logger = get_logger("sync")


class ReceiptClock:
    """Strictly increasing local receipt stamps in nanoseconds."""

    def __init__(self) -> None:
        self._last = 0

    def __call__(self) -> int:
        stamp = time.time_ns()
        if stamp <= self._last:
            stamp = self._last + 1
        self._last = stamp
        return stamp

    def advance_past(self, stamp: int) -> None:
        """Never hand out a stamp at or below `stamp` (used after a cache restore)."""
        self._last = max(self._last, stamp)


class BackendSupervisor:
    """Connection lifecycle and event flow of a single backend."""

    def __init__(self, engine: "SyncEngine", backend: Backend, normalizer: Normalizer) -> None:
        self.engine = engine
        self.backend = backend
        self.normalizer = normalizer
        self.backend_id = backend.backend_id
        self.state = ConnectionState()
        self.live = asyncio.Event()
        # native id -> conversation of sends not yet resolved
        self.in_flight: dict[str, ConversationKey] = {}
        self._task: asyncio.Task[None] | None = None
        self._session_task: asyncio.Task[None] | None = None
        self._wake = asyncio.Event()
        self._restart = False
        self._stopping = False
        self._failures = 0

    # ---- lifecycle -----------------------------------------------------------

    def start(self) -> None:
        if self._task is not None:
            return
        self._stopping = False
        self._task = asyncio.create_task(self._run(), name=f"supervisor:{self.backend_id}")
        self._task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Supervisor stopped: backend=%s error=%r", self.backend_id, exc)
            self.engine.record_failure(exc)
            self._set_state(ConnectionState.degraded(f"internal error: {exc}"))

    async def stop(self) -> None:
        """Disconnect for good: Disconnected is terminal until start() again."""
        self._stopping = True
        self._restart = False
        self._wake.set()
        if self._task is not None:
            if not self._task.done():
                self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        await self._teardown()
        await self.fail_in_flight("backend disconnected")
        self._set_state(ConnectionState())
        logger.info("Backend stopped: backend=%s", self.backend_id)

    def reconnect(self) -> None:
        """Drop the current session (if any) and connect again without waiting out the backoff."""
        if self._stopping or self._task is None:
            return
        logger.info("Reconnect requested: backend=%s state=%s", self.backend_id, self.state)
        self._failures = 0
        if self._session_task is not None and not self._session_task.done():
            self._restart = True
            self._session_task.cancel()
        self._wake.set()

    def _set_state(self, state: ConnectionState) -> None:
        if state == self.state:
            return
        logger.info("Connection state: backend=%s state=%s", self.backend_id, state)
        self.state = state
        if state.status is ConnectionStatus.LIVE:
            self.live.set()
        else:
            self.live.clear()
        self.engine.connection_changed(self.backend_id, state)

    async def _teardown(self) -> None:
        try:
            await self.backend.disconnect()
        except Exception:
            logger.warning("Error disconnecting: backend=%s", self.backend_id, exc_info=True)

    async def _run(self) -> None:
        while not self._stopping:
            self._wake.clear()
            self._session_task = asyncio.create_task(self._session(), name=f"session:{self.backend_id}")
            try:
                await self._session_task
                return
            except asyncio.CancelledError:
                if not self._restart:
                    raise
                self._restart = False
                await self._teardown()
                await self.fail_in_flight("reconnect requested")
                self._set_state(ConnectionState())
                continue
            except StoreInvariantError:
                raise
            except BackendUnavailable as exc:
                reason = exc.reason
            except Exception as exc:
                logger.exception("Unexpected error in session: backend=%s", self.backend_id)
                reason = f"internal error: {exc}"
            finally:
                self._session_task = None

            self._set_state(ConnectionState.degraded(reason))
            await self._teardown()
            await self.fail_in_flight(f"transport lost: {reason}")

            policy = self.engine.policy
            if policy.max_attempts is not None and self._failures >= policy.max_attempts:
                logger.error(
                    "Retry budget exhausted: backend=%s attempts=%d reason=%s",
                    self.backend_id,
                    self._failures,
                    reason,
                )
                await self._wake.wait()
                self._failures = 0
                continue

            delay = policy.delay(self._failures, self.engine.rng)
            self._failures += 1
            logger.warning(
                "Backend degraded: backend=%s reason=%s attempt=%d retry_in=%.2fs",
                self.backend_id,
                reason,
                self._failures,
                delay,
            )
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=delay)
            except TimeoutError:
                pass

    async def _session(self) -> None:
        self._set_state(ConnectionState(ConnectionStatus.CONNECTING))
        await self.backend.connect()
        self.normalizer.self_id = self.backend.self_id
        events = self.backend.events()
        self._set_state(ConnectionState(ConnectionStatus.SYNCING_HISTORY))

        drain = asyncio.create_task(self._drain(events), name=f"drain:{self.backend_id}")
        backfill = asyncio.create_task(self._backfill(), name=f"backfill:{self.backend_id}")
        try:
            done, _ = await asyncio.wait({drain, backfill}, return_when=asyncio.FIRST_COMPLETED)
            if drain in done:
                drain.result()
                raise BackendUnavailable(self.backend_id, "event stream ended")
            backfill.result()
            self._failures = 0
            self._set_state(ConnectionState(ConnectionStatus.LIVE))
            await drain
            if not self._stopping:
                raise BackendUnavailable(self.backend_id, "event stream ended")
        finally:
            for task in (drain, backfill):
                if not task.done():
                    task.cancel()
            await asyncio.gather(drain, backfill, return_exceptions=True)

    # ---- event flow ----------------------------------------------------------

    async def _drain(self, events) -> None:
        async for raw in events:
            for mutation in self.normalizer.normalize_event(raw):
                await self.dispatch(mutation)

    async def _backfill(self) -> None:
        keys: list[ConversationKey] = []
        async for raw in self.backend.list_conversations():
            for mutation in self.normalizer.normalize_conversation(raw):
                await self.dispatch(mutation)
                if isinstance(mutation, UpsertConversation) and mutation.key not in keys:
                    keys.append(mutation.key)
        # conversations known from the cache or earlier sessions catch up too
        for conversation in self.engine.store.list_conversations(self.backend_id):
            if conversation.key not in keys:
                keys.append(conversation.key)

        fetched = 0
        for key in keys:
            fetched += await self._backfill_conversation(key)
        logger.info(
            "History synced: backend=%s conversations=%d messages=%d",
            self.backend_id,
            len(keys),
            fetched,
        )

    async def _backfill_conversation(self, key: ConversationKey) -> int:
        settings = self.engine.settings
        remaining = settings.backfill_depth
        cursor = None
        fetched = 0
        while remaining > 0:
            limit = min(settings.page_size, remaining)
            try:
                page = await self.backend.fetch_history(key.native_id, cursor, limit)
            except NotFound:
                logger.info("Skipping history of unknown conversation: key=%s", key)
                return fetched
            for raw in page.items:
                for mutation in self.normalizer.normalize_history(key.native_id, raw):
                    await self.dispatch(mutation)
            fetched += len(page.items)
            remaining -= len(page.items)
            if len(page.items) < limit or page.next_cursor is None or page.next_cursor == cursor:
                break
            cursor = page.next_cursor
        return fetched

    async def dispatch(self, mutation: Mutation) -> None:
        """Stamp and route one mutation to its conversation lane."""
        if isinstance(mutation, UpdateConnectionState):
            self._backend_reported(mutation.state)
            return
        if mutation.key.backend_id != self.backend_id:
            raise StoreInvariantError(
                f"Backend {self.backend_id} emitted a mutation for {mutation.key}"
            )
        if isinstance(mutation, AppendMessage):
            mutation = replace(mutation, received_at=self.engine.clock())
        elif isinstance(mutation, UpdateDeliveryState) and mutation.state is not DeliveryState.SENDING:
            self.in_flight.pop(mutation.native_id, None)
        await self.engine.lanes.submit(mutation)

    def _backend_reported(self, state: ConnectionState) -> None:
        if state.status in (ConnectionStatus.DEGRADED, ConnectionStatus.DISCONNECTED):
            raise BackendUnavailable(self.backend_id, state.reason or state.status.value)
        logger.debug("Ignoring backend-reported state: backend=%s state=%s", self.backend_id, state)

    async def fail_in_flight(self, reason: str) -> None:
        """Mark every send still Sending as Failed."""
        if not self.in_flight:
            return
        lanes = self.engine.lanes
        if lanes.failure is not None:
            self.in_flight.clear()
            return
        await lanes.join()
        failed = 0
        for native_id, key in list(self.in_flight.items()):
            conversation = self.engine.store.get(key)
            message = conversation.message(native_id) if conversation is not None else None
            if message is not None and message.delivery_state is DeliveryState.SENDING:
                await lanes.submit(UpdateDeliveryState(key, native_id, DeliveryState.FAILED))
                failed += 1
        self.in_flight.clear()
        await lanes.join()
        if failed:
            logger.warning("Failed in-flight sends: backend=%s count=%d reason=%s", self.backend_id, failed, reason)


class SyncEngine:
    """Keeps the conversation store in step with every registered backend.

    Usage:
        async with SyncEngine() as engine:
            engine.add_backend(LocalBackend())
            await engine.wait_live()
            ...
    """

    def __init__(
        self,
        store: ConversationStore | None = None,
        settings: SyncConfig | None = None,
        hooks: Hooks | None = None,
        cache=None,
        rng: random.Random | None = None,
    ) -> None:
        self.store = store if store is not None else ConversationStore()
        self.settings = settings or SyncConfig()
        self.policy = self.settings.backoff.policy()
        self.hooks = hooks or Hooks()
        self.cache = cache
        self.rng = rng or random.Random()
        self.clock = ReceiptClock()
        self.feed = ChangeFeed(self.settings.notification_buffer)
        self.lanes = DispatchLanes(self._apply, self.settings.lane_capacity)
        self._supervisors: dict[str, BackendSupervisor] = {}
        self._started = False
        self._failure: BaseException | None = None

    async def __aenter__(self) -> "SyncEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()

    @property
    def backends(self) -> dict[str, Backend]:
        return {backend_id: s.backend for backend_id, s in self._supervisors.items()}

    def supervisor(self, backend_id: str) -> BackendSupervisor:
        supervisor = self._supervisors.get(backend_id)
        if supervisor is None:
            raise KeyError(f"Unknown backend: {backend_id}")
        return supervisor

    def add_backend(self, backend: Backend, normalizer: Normalizer | None = None) -> BackendSupervisor:
        """Register a backend; it starts syncing right away if the engine is running.

        Raises:
            ValueError: for a duplicate or invalid backend id, or a kind without a normalizer
        """
        backend_id = backend.backend_id
        if not backend_id or ":" in backend_id:
            raise ValueError(f"Invalid backend id {backend_id!r}")
        if backend_id in self._supervisors:
            raise ValueError(f"Backend {backend_id} is already registered")
        if normalizer is None:
            normalizer = NormalizerRegistry.create(backend.kind, backend_id)
        supervisor = BackendSupervisor(self, backend, normalizer)
        self._supervisors[backend_id] = supervisor
        logger.info("Added backend: backend=%s kind=%s", backend_id, backend.kind)
        if self._started:
            supervisor.start()
        return supervisor

    async def start(self) -> None:
        if self._started:
            return
        if self.cache is not None:
            restored = self.store.restore(self.cache.load())
            self.clock.advance_past(self.store.max_received_at())
            logger.info("Restored conversations from cache: count=%d", restored)
        self._started = True
        for supervisor in self._supervisors.values():
            supervisor.start()
        logger.info("Sync engine started: backends=%d", len(self._supervisors))

    async def shutdown(self) -> None:
        """Stop every backend, flush the lanes, then save and close the cache.

        Raises:
            StoreInvariantError: if one was raised while syncing
        """
        if not self._started:
            return
        self._started = False
        await asyncio.gather(*(s.stop() for s in self._supervisors.values()))
        if self.lanes.failure is None:
            await self.lanes.join()
        await self.lanes.close()
        failure = self._failure or self.lanes.failure
        if self.cache is not None:
            if failure is None:
                self.cache.save(self.store.list_conversations())
            self.cache.close()
        self.feed.close()
        logger.info("Sync engine stopped")
        if isinstance(failure, StoreInvariantError):
            raise failure

    def record_failure(self, exc: BaseException) -> None:
        if self._failure is None:
            self._failure = exc

    def reconnect(self, backend_id: str) -> None:
        self.supervisor(backend_id).reconnect()

    async def remove_backend(self, backend_id: str) -> None:
        """Disconnect a backend and drop its conversations from the store."""
        supervisor = self.supervisor(backend_id)
        await supervisor.stop()
        del self._supervisors[backend_id]
        if self.lanes.failure is None:
            await self.lanes.join()
        self.lanes.discard(backend_id)
        self.feed.publish(self.store.remove_backend(backend_id))

    async def send_message(self, key: ConversationKey, body: MessageBody) -> SendHandle:
        """Send a message and append it locally as Sending.

        Raises:
            BackendUnavailable: the backend is not syncing or live
            NotFound: the backend does not know the conversation
            SendFailed: the backend could not dispatch the message
        """
        supervisor = self._supervisors.get(key.backend_id)
        if supervisor is None:
            raise BackendUnavailable(key.backend_id, "no such backend")
        if not supervisor.state.is_usable:
            raise BackendUnavailable(key.backend_id, f"backend is {supervisor.state}")

        try:
            handle = await supervisor.backend.send_message(key.native_id, body)
        except NotFound:
            raise
        except BackendUnavailable as exc:
            raise SendFailed(str(key), exc.reason) from exc
        except Exception as exc:
            raise SendFailed(str(key), str(exc)) from exc

        supervisor.normalizer.note_outgoing(handle, key)
        supervisor.in_flight[handle.native_id] = key
        await supervisor.dispatch(
            AppendMessage(
                key,
                native_id=handle.native_id,
                sender_id=handle.sender_id or supervisor.backend.self_id or "",
                body=body,
                timestamp=handle.timestamp,
                delivery_state=DeliveryState.SENDING,
                outgoing=True,
            )
        )
        logger.debug("Sending message: key=%s message=%s", key, handle.native_id)
        return handle

    def mark_read(self, key: ConversationKey) -> None:
        self.feed.publish(self.store.mark_read(key))

    def subscribe(self) -> Subscription:
        return self.feed.subscribe()

    def connection_state(self, backend_id: str) -> ConnectionState:
        return self.store.connection_state(backend_id)

    async def wait_live(self, backend_id: str | None = None, timeout: float | None = None) -> None:
        """Wait until one backend (or every registered backend) is Live."""
        supervisors = [self.supervisor(backend_id)] if backend_id else list(self._supervisors.values())
        await asyncio.wait_for(asyncio.gather(*(s.live.wait() for s in supervisors)), timeout)

    async def flush(self) -> None:
        """Wait until every queued mutation has reached the store."""
        await self.lanes.join()

    # ---- callbacks -----------------------------------------------------------

    def connection_changed(self, backend_id: str, state: ConnectionState) -> None:
        self.feed.publish(self.store.set_connection_state(backend_id, state))

    def _apply(self, mutation: ConversationMutation) -> None:
        changes: list[Change] = self.store.apply(mutation)
        if not changes:
            return
        self.feed.publish(changes)
        if (
            self.hooks.on_new_message
            and isinstance(mutation, AppendMessage)
            and not mutation.outgoing
            and not mutation.historical
            and any(c.kind is ChangeKind.MESSAGE_ADDED for c in changes)
        ):
            conversation = self.store.get(mutation.key)
            message = conversation.message(mutation.native_id) if conversation is not None else None
            if message is not None:
                self.hooks.do_on_new_message(conversation, message)
