"""
Replication Pump

Drives a set of services sharing one in-memory transport: sweeps every
outbox, then delivers every queue a service consumes, until nothing moves.
Used for local runs of the whole system and in tests.
"""

import asyncio
import logging
from typing import Optional, Sequence

from ..transport.memory import InMemoryTransport

logger = logging.getLogger(__name__)


class ReplicationPump:
    """
    Usage:
        pump = ReplicationPump(transport, [users, links, analytics])
        await users.store.create_user("alice", password_hash)
        await pump.run_until_idle()
    """

    def __init__(
        self,
        transport: InMemoryTransport,
        runtimes: Sequence,
        max_batch: int = 10,
        poll_interval: float = 0.5
    ):
        self.transport = transport
        self.runtimes = list(runtimes)
        self.max_batch = max_batch
        self.poll_interval = poll_interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def run_once(self) -> int:
        """One round: dispatch every outbox, deliver one batch per consumed queue."""
        moved = 0
        for runtime in self.runtimes:
            moved += await runtime.dispatch()

        for runtime in self.runtimes:
            for queue in runtime.consumes:
                batch = await self.transport.deliver(queue, runtime.queue_handler, self.max_batch)
                moved += len(batch)
        return moved

    async def run_until_idle(self, max_rounds: int = 100) -> int:
        """Run rounds until one moves nothing. Returns the number of rounds run."""
        for rounds in range(1, max_rounds + 1):
            if await self.run_once() == 0:
                return rounds
        logger.warning(f"Replication still busy after {max_rounds} rounds")
        return max_rounds

    async def start(self):
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info("ReplicationPump started for %d services", len(self.runtimes))

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("ReplicationPump stopped")

    async def _run(self):
        while self._running:
            try:
                if await self.run_once() == 0:
                    await asyncio.sleep(self.poll_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"ReplicationPump error: {e}", exc_info=True)
                await asyncio.sleep(self.poll_interval)
