"""Composition root: builds the database, lifecycle services, scheduler and HTTP app."""
from __future__ import annotations

import logging
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI

from .app.lifecycle import DatabaseError
from .app.routes.jobs import router as lifecycle_router
from .app.services.lifecycle import LifecycleServices, build_lifecycle_services
from .config import Settings, load_settings
from .database import Database
from .jobs import LifecycleScheduler

logger = logging.getLogger(__name__)

load_dotenv()


def create_app(
    settings: Optional[Settings] = None,
    *,
    database: Optional[Database] = None,
    services: Optional[LifecycleServices] = None,
    scheduler: Optional[LifecycleScheduler] = None,
) -> FastAPI:
    settings = settings or load_settings()
    database = database or Database(settings)
    services = services or build_lifecycle_services(settings, database)
    scheduler = scheduler or LifecycleScheduler.from_settings(
        settings, services.renewal_service, services.reconciler
    )

    app = FastAPI(title="Pet Plan Lifecycle API")
    app.state.settings = settings
    app.state.database = database
    app.state.lifecycle_services = services
    app.state.lifecycle_scheduler = scheduler
    app.include_router(lifecycle_router)

    @app.on_event("startup")
    def start_lifecycle() -> None:
        database.start_health_monitor()
        try:
            services.notification_log.ensure_table()
        except DatabaseError:
            logger.exception("Could not prepare lifecycle notification log; notices will fail until it exists")
        scheduler.start()

    @app.on_event("shutdown")
    def stop_lifecycle() -> None:
        scheduler.stop()
        database.close()

    return app


app = create_app()

# run: uvicorn petplan.main:app --host 127.0.0.1 --port 8000
