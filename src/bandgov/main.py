"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from bandgov.api.bands import router as bands_router
from bandgov.api.governance import router as governance_router
from bandgov.config import Settings
from bandgov.core.effects import initialize_effect_handlers
from bandgov.core.event_bus import EventBus
from bandgov.core.notifications import NotificationDispatcher
from bandgov.db.engine import create_engine, create_schema

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup: engine and tables, effect registry, notifications, expiry sweep."""
    settings: Settings = app.state.settings
    engine = create_engine(settings.database_url)
    await create_schema(engine)
    app.state.engine = engine
    app.state.effect_registry = initialize_effect_handlers()
    app.state.event_bus = EventBus()

    dispatcher = NotificationDispatcher(app.state.event_bus)
    dispatcher.start()
    app.state.notification_dispatcher = dispatcher

    # Start APScheduler for closing expired proposals
    scheduler = None
    effective_cron = settings.effective_sweep_cron()
    if effective_cron is not None:
        from apscheduler.schedulers.asyncio import AsyncIOScheduler
        from apscheduler.triggers.cron import CronTrigger

        from bandgov.core.scheduler_runner import sweep_expired_proposals

        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            sweep_expired_proposals,
            trigger=CronTrigger.from_crontab(effective_cron),
            kwargs={
                "engine": engine,
                "registry": app.state.effect_registry,
                "event_bus": app.state.event_bus,
                "handler_timeout": settings.bandgov_effect_timeout_seconds,
            },
            id="sweep_expired_proposals",
            name="Close expired proposals",
            replace_existing=True,
            max_instances=1,
        )
        scheduler.start()
        logger.info("scheduler_started cron=%s", effective_cron)
    else:
        logger.info("scheduler_disabled")
    app.state.scheduler = scheduler

    yield

    if scheduler is not None:
        scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")

    await dispatcher.stop()
    await engine.dispose()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the band governance FastAPI application."""
    settings = settings or Settings()

    logging.basicConfig(
        level=getattr(logging, settings.bandgov_log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(
        title="Band Governance",
        version="0.1.0",
        description="Proposal voting and effects execution for bands",
        docs_url="/docs" if settings.bandgov_env != "production" else None,
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.include_router(governance_router)
    app.include_router(bands_router)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "env": settings.bandgov_env}

    return app


app = create_app()
