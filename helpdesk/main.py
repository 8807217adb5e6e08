from contextlib import asynccontextmanager

import asyncpg
from fastapi import FastAPI

from helpdesk.api.routes import events, metrics, ping, tickets
from helpdesk.core.config import Settings, get_settings
from helpdesk.core.logging import configure_logging, init_tracer, shutdown_tracer
from helpdesk.events.hub import EventHub
from helpdesk.tickets.postgres import PostgresTicketRepository
from helpdesk.tickets.repository import InMemoryTicketRepository, TicketRepository
from helpdesk.tickets.service import TicketService
from helpdesk.tickets.sweeper import SLASweeper


async def build_repository(settings: Settings) -> tuple[TicketRepository, asyncpg.Pool | None]:
    """Create the repository for the configured storage backend."""

    if settings.storage_backend == "memory":
        return InMemoryTicketRepository(), None

    pool = await asyncpg.create_pool(
        dsn=settings.postgres_dsn,
        min_size=settings.postgres_pool_min_size,
        max_size=settings.postgres_pool_max_size,
    )
    repository = PostgresTicketRepository(pool)
    try:
        await repository.ensure_schema()
    except Exception:
        await pool.close()
        raise
    return repository, pool


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - executed by framework
    settings = get_settings()
    logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)
    app.state.logger = logger
    app.state.tracer_provider = tracer_provider

    repository, pool = await build_repository(settings)
    hub = EventHub()
    service = TicketService(repository, hub, max_attempts=settings.max_write_attempts)
    sweeper = SLASweeper(service, interval_seconds=settings.sla_sweep_interval_seconds)

    app.state.event_hub = hub
    app.state.ticket_service = service
    app.state.sla_sweeper = sweeper
    if settings.sla_sweeper_enabled:
        sweeper.start()
    logger.info("Helpdesk API ready (storage=%s)", settings.storage_backend)
    try:
        yield
    finally:
        await sweeper.stop()
        if pool is not None:
            await pool.close()
        shutdown_tracer(tracer_provider)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.include_router(ping.router)
    app.include_router(metrics.router)
    app.include_router(tickets.router)
    app.include_router(events.router)
    return app


app = create_app()
