from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from datetime import datetime, timezone
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from wormhole_web.server.orchestrator import TaskSupervisor
    from wormhole_web.server.state import TransferRegistry

logger = logging.getLogger(__name__)


class LifecycleSweeper:
    """Periodically remove expired transfer records together with their files."""

    def __init__(
        self,
        registry: TransferRegistry,
        ttl_seconds: float = 3600.0,
        interval_seconds: float = 300.0,
        supervisor: TaskSupervisor | None = None,
    ) -> None:
        self._registry = registry
        self._supervisor = supervisor
        self.ttl_seconds = ttl_seconds
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None

    def sweep(self, now: datetime | None = None) -> list[str]:
        """Run one pass; returns the ids that were removed."""
        now = now or datetime.now(timezone.utc)
        expired = self._registry.expired(self.ttl_seconds, now=now)
        for transfer_id in expired:
            # Record first, then its directory: a late reader gets a clean 404.
            self._registry.delete(transfer_id)
            logger.info("Cleaned up expired transfer: %s", transfer_id)
        return expired

    async def run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                removed = await asyncio.to_thread(self.sweep)
            except Exception:  # noqa: BLE001
                logger.exception("Transfer cleanup pass failed")
                continue
            if self._supervisor is not None:
                for transfer_id in removed:
                    if self._supervisor.cancel(transfer_id):
                        logger.info("Cancelled expired transfer task: %s", transfer_id)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="transfer-sweeper")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None
