from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from entitlement_service.api.routers import admin, billing, quota
from entitlement_service.infrastructure.db.engine import ensure_schema, get_engine
from entitlement_service.shared.config import get_settings


logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    if settings.postgres_dsn and settings.auto_create_schema:
        ensure_schema(get_engine(settings.postgres_dsn, settings.store_timeout_seconds))
        logger.info("main: schema_ensured")

    app = FastAPI(title="Entitlement API")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(quota.router)
    app.include_router(billing.router)
    app.include_router(admin.router)
    return app


app = create_app()
