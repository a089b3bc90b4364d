"""Per-transfer fan-out of record snapshots to live subscribers."""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from wormhole_web.server.models import TransferRecord

logger = logging.getLogger(__name__)


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


@runtime_checkable
class Sink(Protocol):
    """A live delivery target subscribed to one transfer."""

    def offer(self, payload: str) -> bool:
        """Hand over one serialized snapshot without blocking.

        Returns ``False`` when the sink can no longer accept messages.
        """
        ...


class QueueSink:
    """Buffer snapshots for a connection that drains them at its own pace.

    ``offer`` never blocks: once the buffer is full the consumer is too slow,
    so the sink closes itself and reports failure. Must be created inside a
    running event loop; ``offer`` belongs to that loop's thread, while
    ``close`` may be called from any thread.
    """

    def __init__(self, maxsize: int = 64) -> None:
        self._queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=maxsize)
        self._loop = asyncio.get_running_loop()
        self.closed = False

    def offer(self, payload: str) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            self.close()
            return False
        return True

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if _running_loop() is self._loop:
            self._end_stream()
        else:
            self._loop.call_soon_threadsafe(self._end_stream)

    def _end_stream(self) -> None:
        # Pending snapshots are useless to a closed sink; make room for the
        # end-of-stream marker.
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def get(self) -> str | None:
        """Next payload, or ``None`` once the sink is closed."""
        if self.closed and self._queue.empty():
            return None
        return await self._queue.get()


class Broadcaster:
    """Maintains the subscriber set of every transfer id."""

    def __init__(self) -> None:
        self._subscribers: dict[str, set[Sink]] = {}
        self._lock = threading.Lock()

    def subscribe(
        self, transfer_id: str, sink: Sink, snapshot: TransferRecord | None = None,
    ) -> None:
        """Add *sink*; deliver *snapshot* to it first when one exists."""
        with self._lock:
            self._subscribers.setdefault(transfer_id, set()).add(sink)
            if snapshot is not None and not self._deliver(sink, snapshot.to_wire()):
                self._discard(transfer_id, sink)

    def unsubscribe(self, transfer_id: str, sink: Sink) -> None:
        with self._lock:
            self._discard(transfer_id, sink)

    def forget(self, transfer_id: str) -> None:
        """Drop every subscriber of *transfer_id*, closing those that can be closed."""
        with self._lock:
            sinks = self._subscribers.pop(transfer_id, set())
        for sink in sinks:
            close = getattr(sink, "close", None)
            if close is None:
                continue
            try:
                close()
            except Exception:  # noqa: BLE001
                logger.debug("Subscriber raised while closing", exc_info=True)

    def subscriber_count(self, transfer_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(transfer_id, ()))

    def publish(self, record: TransferRecord) -> None:
        """Offer *record* to every subscriber of its id, pruning dead ones.

        Never raises and never blocks on a subscriber.
        """
        with self._lock:
            sinks = self._subscribers.get(record.id)
            if not sinks:
                return
            payload = record.to_wire()
            for sink in list(sinks):
                if not self._deliver(sink, payload):
                    self._discard(record.id, sink)

    @staticmethod
    def _deliver(sink: Sink, payload: str) -> bool:
        try:
            return sink.offer(payload)
        except Exception:  # noqa: BLE001
            logger.debug("Subscriber raised during delivery", exc_info=True)
            return False

    def _discard(self, transfer_id: str, sink: Sink) -> None:
        sinks = self._subscribers.get(transfer_id)
        if sinks is None:
            return
        if sink in sinks:
            sinks.discard(sink)
            logger.debug("Dropped subscriber of %s", transfer_id)
        if not sinks:
            del self._subscribers[transfer_id]
