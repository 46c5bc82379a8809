"""Per-conversation dispatch lanes.

Every conversation gets its own bounded queue and worker task, so mutations
for one conversation are applied one at a time in submission order while
different conversations proceed independently. A full lane only slows the
backend task submitting to it. A StoreInvariantError stops every lane; any
other error is logged and the mutation skipped.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass

from chatters.errors import StoreInvariantError
from chatters.logging import get_logger
from chatters.models import ConversationKey
from chatters.mutations import ConversationMutation

logger = get_logger("lanes")

DEFAULT_LANE_CAPACITY = 256


@dataclass
class _Lane:
    queue: asyncio.Queue[ConversationMutation]
    worker: asyncio.Task[None]


class DispatchLanes:
    """Route mutations to a single worker per conversation key."""

    def __init__(
        self,
        apply: Callable[[ConversationMutation], None],
        capacity: int = DEFAULT_LANE_CAPACITY,
    ) -> None:
        self._apply = apply
        self._capacity = capacity
        self._lanes: dict[ConversationKey, _Lane] = {}
        self.failure: BaseException | None = None

    def __len__(self) -> int:
        return len(self._lanes)

    def _lane(self, key: ConversationKey) -> _Lane:
        lane = self._lanes.get(key)
        if lane is None:
            queue: asyncio.Queue[ConversationMutation] = asyncio.Queue(maxsize=self._capacity)
            worker = asyncio.create_task(self._run(key, queue), name=f"lane:{key}")
            lane = _Lane(queue, worker)
            self._lanes[key] = lane
        return lane

    async def submit(self, mutation: ConversationMutation) -> None:
        """Queue a mutation, waiting while its lane is full.

        Raises:
            StoreInvariantError: the error that stopped a lane worker, if any
        """
        if self.failure is not None:
            raise self.failure
        await self._lane(mutation.key).queue.put(mutation)

    async def _run(self, key: ConversationKey, queue: asyncio.Queue[ConversationMutation]) -> None:
        while True:
            mutation = await queue.get()
            try:
                self._apply(mutation)
            except StoreInvariantError as exc:
                logger.exception("Lane stopped: key=%s mutation=%s", key, type(mutation).__name__)
                self.failure = exc
                while not queue.empty():
                    queue.get_nowait()
                    queue.task_done()
                raise
            except Exception:
                logger.exception("Error applying mutation: key=%s mutation=%s", key, type(mutation).__name__)
            finally:
                queue.task_done()

    async def join(self, key: ConversationKey | None = None) -> None:
        """Wait until queued mutations (for one key, or all) have been applied."""
        if key is not None:
            lanes = [self._lanes[key]] if key in self._lanes else []
        else:
            lanes = list(self._lanes.values())
        for lane in lanes:
            await lane.queue.join()
        if self.failure is not None:
            raise self.failure

    def discard(self, backend_id: str) -> None:
        """Stop and forget the lanes of a removed backend."""
        for key in [k for k in self._lanes if k.backend_id == backend_id]:
            self._lanes.pop(key).worker.cancel()

    async def close(self) -> None:
        lanes = list(self._lanes.values())
        self._lanes.clear()
        for lane in lanes:
            lane.worker.cancel()
        await asyncio.gather(*(lane.worker for lane in lanes), return_exceptions=True)
