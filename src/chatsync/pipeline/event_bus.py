import asyncio
from asyncio import Queue
from collections.abc import Awaitable, Callable

from loguru import logger

from chatsync.platform.base import PlatformMessage

EventHandler = Callable[[PlatformMessage], Awaitable[None]]


class EventBus:
    """Inbound event queue with per-conversation dispatch lanes.

    Each conversation gets its own lane (queue + worker task) so events of
    one conversation are handled in delivery order while different
    conversations are processed concurrently. A lane's worker exits once
    its queue drains.
    """

    def __init__(self):
        self.inbound: Queue[PlatformMessage] = Queue()
        self._lanes: dict[str, Queue[PlatformMessage]] = {}
        self._workers: dict[str, asyncio.Task] = {}
        self._running = False

    async def publish(self, event: PlatformMessage):
        """Publish an inbound platform event to the bus."""
        await self.inbound.put(event)

    async def consume(self) -> PlatformMessage:
        """Consume an inbound event from the bus."""
        return await self.inbound.get()

    async def dispatch(self, handler: EventHandler) -> None:
        """
        Route inbound events to per-conversation lanes.
        Run this as a background task.
        """
        self._running = True
        while self._running:
            try:
                event = await asyncio.wait_for(self.inbound.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            self._enqueue(event, handler)

    def _enqueue(self, event: PlatformMessage, handler: EventHandler) -> None:
        ref = event.conversation_ref
        lane = self._lanes.setdefault(ref, Queue())
        lane.put_nowait(event)

        worker = self._workers.get(ref)
        if worker is None or worker.done():
            self._workers[ref] = asyncio.create_task(
                self._drain(ref, lane, handler), name=f"lane-{ref}"
            )

    async def _drain(
        self, ref: str, lane: Queue[PlatformMessage], handler: EventHandler
    ) -> None:
        try:
            while not lane.empty():
                event = lane.get_nowait()
                try:
                    await handler(event)
                except Exception as e:
                    logger.error(f"Error handling event {event.id} in {ref}: {e}")
        finally:
            # No await between the empty check and cleanup, so no event is stranded.
            self._lanes.pop(ref, None)
            self._workers.pop(ref, None)

    async def drain(self) -> None:
        """Wait until every lane worker spawned so far has finished."""
        while self._workers:
            await asyncio.gather(*list(self._workers.values()), return_exceptions=True)

    def stop(self):
        """Stop dispatching; lanes already running finish their queues."""
        self._running = False

    @property
    def inbound_size(self) -> int:
        """Return the number of events waiting to be routed."""
        return self.inbound.qsize()

    @property
    def active_lanes(self) -> int:
        """Number of conversations with a running lane worker."""
        return len(self._workers)
