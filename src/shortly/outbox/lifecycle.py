"""
Outbox Lifecycle Management

Runs the outbox processor for the lifetime of an application.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from ..config import ReplicationConfig, get_config
from .dispatcher import OutboxDispatcher
from .processor import start_outbox_processor, stop_outbox_processor

logger = logging.getLogger(__name__)


@asynccontextmanager
async def outbox_lifespan(
    dispatcher: OutboxDispatcher,
    config: Optional[ReplicationConfig] = None
):
    """
    Lifespan context manager for the outbox processor.

    Usage in FastAPI:
        @asynccontextmanager
        async def lifespan(app: FastAPI):
            async with outbox_lifespan(runtime.dispatcher):
                yield

        app = FastAPI(lifespan=lifespan)

    Only one instance per service should run the processor; the others set
    OUTBOX_PROCESSOR_ENABLED=false.
    """
    config = config or get_config()

    if config.outbox_enabled and config.outbox_processor_enabled:
        logger.info("Starting outbox processor...")
        processor = await start_outbox_processor(
            dispatcher,
            poll_interval=config.poll_interval
        )
        try:
            yield processor
        finally:
            logger.info("Stopping outbox processor...")
            await stop_outbox_processor()
    else:
        reason = []
        if not config.outbox_enabled:
            reason.append("OUTBOX_ENABLED=false")
        if not config.outbox_processor_enabled:
            reason.append("OUTBOX_PROCESSOR_ENABLED=false")
        logger.info(f"Outbox processor disabled: {', '.join(reason)}")
        yield None
