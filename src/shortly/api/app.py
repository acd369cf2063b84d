"""
Ops API

A small FastAPI app per service exposing health and outbox endpoints.
The business API of each service is out of this package's scope.

Run with:
    SERVICE_NAME=links uvicorn --factory shortly.api.app:create_default_app --port 8080

Without a deployment transport the app runs on a process-local
InMemoryTransport and never starts the outbox processor: nothing in the
process delivers from that transport, so change records stay unsent.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from ..config import get_config
from ..database.adapter import DatabaseAdapter
from ..observability import setup_observability
from ..outbox.lifecycle import outbox_lifespan
from ..services import SERVICE_BUILDERS
from ..services.runtime import ServiceRuntime
from ..transport.base import Transport
from ..transport.memory import InMemoryTransport
from .routers import admin_router, health_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime: ServiceRuntime = app.state.runtime
    await runtime.setup()
    try:
        if runtime.dispatcher is not None and can_run_processor(runtime):
            async with outbox_lifespan(runtime.dispatcher, runtime.config):
                yield
        else:
            yield
    finally:
        await runtime.db.disconnect()


def can_run_processor(runtime: ServiceRuntime) -> bool:
    """The outbox processor needs a transport other processes consume from."""
    if isinstance(runtime.transport, InMemoryTransport):
        logger.warning(
            f"Outbox processor not started for {runtime.name}: "
            f"in-memory transport is local to this process"
        )
        return False
    return True


def create_app(runtime: ServiceRuntime) -> FastAPI:
    """Build the ops app of one service runtime."""
    app = FastAPI(
        title=f"shortly-{runtime.name}",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.runtime = runtime
    app.include_router(health_router)
    app.include_router(admin_router)
    return app


def create_default_app(transport: Optional[Transport] = None) -> FastAPI:
    """
    App for the service named by SERVICE_NAME, on the configured database.

    Pass the deployment's transport to have the outbox processor publish
    change records.
    """
    config = get_config()
    setup_observability(config)
    if config.service_name not in SERVICE_BUILDERS:
        raise ValueError(f"SERVICE_NAME must be one of {sorted(SERVICE_BUILDERS)}")

    if transport is None:
        transport = InMemoryTransport(max_deliveries=config.transport_max_retries)
    runtime = SERVICE_BUILDERS[config.service_name](DatabaseAdapter(), transport, config)
    logger.info(f"Ops API for {runtime.name}")
    return create_app(runtime)
