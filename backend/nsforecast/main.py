import logging
from pathlib import Path
from typing import Optional, Sequence

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI

from nsforecast import __version__
from nsforecast.api import api_router
from nsforecast.core.db import Database, init_db
from nsforecast.core.logging import configure_logging
from nsforecast.core.settings import Settings, get_settings
from nsforecast.services.coordinator import ReconciliationCoordinator
from nsforecast.services.exporter import TabularExporter
from nsforecast.services.forecast_store import ForecastStore
from nsforecast.services.inference import ModelRunner
from nsforecast.services.nightscout_client import NightscoutClient, NightscoutObservationSource
from nsforecast.services.reading_store import (
    InMemoryReadingStore,
    ReadingStore,
    SqlReadingStore,
    StoreObservationSource,
)
from nsforecast.services.reconciler import PredictionReconciler

configure_logging()
settings = get_settings()
logger = logging.getLogger(__name__)

app = FastAPI(title="Nightscout Forecast Reconciler", version=__version__)
app.include_router(api_router, prefix="/api")


async def build_coordinator(
    settings: Settings,
    database: Optional[Database] = None,
    client: Optional[NightscoutClient] = None,
    runners: Sequence[ModelRunner] = (),
) -> ReconciliationCoordinator:
    reading_store: ReadingStore
    if database is not None:
        await database.create_tables()
        reading_store = SqlReadingStore(database)
    else:
        reading_store = InMemoryReadingStore()

    if client is not None:
        source = NightscoutObservationSource(client, max_entries=settings.nightscout.max_entries)
    else:
        logger.warning("Nightscout not configured; reconciling against stored observations only")
        source = StoreObservationSource(reading_store)

    return ReconciliationCoordinator(
        source=source,
        reading_store=reading_store,
        forecast_store=ForecastStore(Path(settings.data.data_dir)),
        reconciler=PredictionReconciler(settings.matching),
        exporter=TabularExporter(settings.export),
        settings=settings,
        treatment_source=client,
        runners=runners,
    )


@app.on_event("startup")
async def startup_event() -> None:
    data_dir = Path(settings.data.data_dir)
    data_dir.mkdir(parents=True, exist_ok=True)
    logger.info("Using data directory: %s", data_dir)

    database = init_db(settings.database.url) if settings.database.url else None

    client = None
    ns_config = settings.nightscout
    if ns_config.base_url:
        client = NightscoutClient(
            base_url=str(ns_config.base_url),
            token=ns_config.token,
            api_secret=ns_config.api_secret,
            timeout_seconds=ns_config.timeout_seconds,
        )

    app.state.database = database
    app.state.nightscout_client = client
    app.state.coordinator = await build_coordinator(settings, database=database, client=client)

    app.state.scheduler = None
    if settings.scheduler.enabled:
        scheduler = AsyncIOScheduler()
        app.state.coordinator.schedule(scheduler, settings.scheduler.interval_minutes)
        scheduler.start()
        app.state.scheduler = scheduler
        logger.info("Background Scheduler initialized.")


@app.on_event("shutdown")
async def shutdown_event() -> None:
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler is not None:
        scheduler.shutdown(wait=False)
    client = getattr(app.state, "nightscout_client", None)
    if client is not None:
        await client.aclose()
    database = getattr(app.state, "database", None)
    if database is not None:
        await database.dispose()
