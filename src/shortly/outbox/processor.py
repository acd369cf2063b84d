"""
Outbox Processor

Background worker that runs dispatch passes on an interval. Records whose
publish failed stay unsent and are picked up by a later pass.
"""

import asyncio
import logging
from typing import Dict, Optional

from .dispatcher import OutboxDispatcher

logger = logging.getLogger(__name__)


class OutboxProcessor:
    """
    Polls the outbox through a dispatcher.

    A pass that sent a full batch is followed immediately by another one;
    otherwise the processor sleeps for `poll_interval` seconds.
    """

    def __init__(self, dispatcher: OutboxDispatcher, poll_interval: float = 1.0):
        self.dispatcher = dispatcher
        self.poll_interval = poll_interval
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.passes = 0
        self.errors = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        """Start the processor."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info("OutboxProcessor started for %s", self.dispatcher.table)

    async def stop(self):
        """Stop the processor."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("OutboxProcessor stopped")

    async def _run(self):
        """Main processing loop."""
        while self._running:
            try:
                sent = await self.dispatcher.dispatch()
                self.passes += 1
                if sent < self.dispatcher.batch_size:
                    await asyncio.sleep(self.poll_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.errors += 1
                logger.error(f"OutboxProcessor error: {e}", exc_info=True)
                await asyncio.sleep(self.poll_interval)

    async def get_stats(self) -> Dict[str, int]:
        """Get outbox statistics."""
        row = await self.dispatcher.db.fetchrow(
            f"""
            SELECT
                COUNT(*) AS total,
                SUM(CASE WHEN sent_at IS NULL THEN 1 ELSE 0 END) AS unsent,
                SUM(CASE WHEN sent_at IS NOT NULL THEN 1 ELSE 0 END) AS sent,
                SUM(CASE WHEN failed_at IS NOT NULL THEN 1 ELSE 0 END) AS failed
            FROM {self.dispatcher.table}
            """
        )
        stats = {key: int(row[key] or 0) for key in ("total", "unsent", "sent", "failed")}
        stats["passes"] = self.passes
        stats["errors"] = self.errors
        return stats


# Global processor instance
_processor: Optional[OutboxProcessor] = None


async def start_outbox_processor(
    dispatcher: OutboxDispatcher,
    poll_interval: float = 1.0
) -> OutboxProcessor:
    """Start the global outbox processor."""
    global _processor

    if _processor is None:
        _processor = OutboxProcessor(dispatcher, poll_interval=poll_interval)

    await _processor.start()
    return _processor


async def stop_outbox_processor():
    """Stop the global outbox processor."""
    global _processor
    if _processor:
        await _processor.stop()
        _processor = None


def get_outbox_processor() -> Optional[OutboxProcessor]:
    """Get the global outbox processor instance."""
    return _processor
