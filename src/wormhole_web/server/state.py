from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from wormhole_web.server.broadcast import Broadcaster
from wormhole_web.server.models import TransferDirection, TransferRecord

if TYPE_CHECKING:
    from wormhole_web.archive import ArchivePackager
    from wormhole_web.backends.base import TransferBackend
    from wormhole_web.config import Settings
    from wormhole_web.server.broadcast import Sink
    from wormhole_web.server.orchestrator import TaskSupervisor
    from wormhole_web.storage import TransferStorage

logger = logging.getLogger(__name__)

_ID_PREFIX = {
    TransferDirection.SEND: "send",
    TransferDirection.RECEIVE: "recv",
}


class TransferRegistry:
    """Thread-safe in-memory registry of transfer records.

    Stored records are private copies that are replaced, never mutated, so a
    reader always sees a complete snapshot. Every ``set`` is published to
    the broadcaster while the registry lock is held, which keeps the
    notifications of one id in mutation order and lets ``subscribe`` hand
    out a snapshot without racing a concurrent ``set``.

    A deleted id stays deleted: ids are never reused, so a late ``set`` from
    the task that owned the record is dropped instead of reviving it.
    """

    def __init__(
        self,
        broadcaster: Broadcaster | None = None,
        storage: TransferStorage | None = None,
    ) -> None:
        self._records: dict[str, TransferRecord] = {}
        self._removed: set[str] = set()
        self._lock = threading.RLock()
        self._last_id = 0
        self.broadcaster = broadcaster or Broadcaster()
        self.storage = storage

    def new_id(self, direction: TransferDirection) -> str:
        """Return a fresh ``send-<n>``/``recv-<n>`` id, unique for this process."""
        with self._lock:
            self._last_id = max(time.time_ns(), self._last_id + 1)
            return f"{_ID_PREFIX[direction]}-{self._last_id}"

    def get(self, transfer_id: str) -> TransferRecord | None:
        with self._lock:
            return self._records.get(transfer_id)

    def set(self, record: TransferRecord) -> TransferRecord:
        """Insert or replace *record* and notify its subscribers.

        Records of deleted ids are neither stored nor published.
        """
        stored = record.model_copy(
            deep=True, update={"updated_at": datetime.now(timezone.utc)},
        )
        with self._lock:
            if stored.id in self._removed:
                logger.debug("Dropped update for removed transfer %s", stored.id)
                return stored
            self._records[stored.id] = stored
            self.broadcaster.publish(stored)
        return stored

    def delete(self, transfer_id: str) -> None:
        """Remove the record, its subscribers and its storage directory."""
        with self._lock:
            self._records.pop(transfer_id, None)
            self._removed.add(transfer_id)
            self.broadcaster.forget(transfer_id)
        if self.storage is not None:
            self.storage.remove(transfer_id)

    def subscribe(self, transfer_id: str, sink: Sink) -> bool:
        """Subscribe *sink* and send it the current snapshot.

        Returns ``False`` (without subscribing) for an unknown id.
        """
        with self._lock:
            record = self._records.get(transfer_id)
            if record is None:
                return False
            self.broadcaster.subscribe(transfer_id, sink, record)
            return True

    def unsubscribe(self, transfer_id: str, sink: Sink) -> None:
        self.broadcaster.unsubscribe(transfer_id, sink)

    def snapshot(self) -> list[TransferRecord]:
        with self._lock:
            return list(self._records.values())

    def expired(self, ttl_seconds: float, now: datetime | None = None) -> list[str]:
        """Ids eligible for removal.

        Finished transfers expire ``ttl_seconds`` after creation. Transfers
        still in flight expire only after ``ttl_seconds`` without a mutation.
        """
        now = now or datetime.now(timezone.utc)
        ttl = timedelta(seconds=ttl_seconds)
        to_remove: list[str] = []
        with self._lock:
            for tid, record in self._records.items():
                if record.state.is_terminal:
                    age = now - record.created_at
                else:
                    age = now - max(record.created_at, record.updated_at)
                if age > ttl:
                    to_remove.append(tid)
        return to_remove

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


@dataclass
class AppState:
    """Services shared by every request handler and transfer task."""

    settings: Settings
    storage: TransferStorage
    transfers: TransferRegistry
    backend: TransferBackend
    packager: ArchivePackager
    supervisor: TaskSupervisor
