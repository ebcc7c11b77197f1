from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request

from .logging import (
    DEBUG_HEADER,
    REQUEST_ID_HEADER,
    bind_request_context,
    configure_logging,
    reset_request_context,
)
from .pipeline import AnalysisPipeline
from .routes import analytics as analytics_routes
from .routes import analyze as analyze_routes
from .runner import JobRunner
from .settings import Settings, settings as default_settings
from .storage import AnalysisStore, get_store, wait_for_background_saves

logger = logging.getLogger(__name__)


def create_app(
    pipeline: Optional[AnalysisPipeline] = None,
    store: Optional[AnalysisStore] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    cfg = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(cfg.logging_level, cfg.LOG_JSON)
        app_store = store if store is not None else get_store()
        app_pipeline = pipeline or AnalysisPipeline(store=app_store, settings=cfg)
        runner = JobRunner(app_pipeline, store=app_store, settings=cfg)
        app.state.store = app_store
        app.state.pipeline = app_pipeline
        app.state.runner = runner
        runner.start()
        logger.info("app_startup", extra={"storage_backend": cfg.storage_backend})
        try:
            yield
        finally:
            await runner.stop()
            await wait_for_background_saves()
            logger.info("app_shutdown")

    app = FastAPI(title="mat-analysis-worker", lifespan=lifespan)
    app.include_router(analyze_routes.router)
    app.include_router(analytics_routes.router)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        debug = request.headers.get(DEBUG_HEADER, "").lower() in ("1", "true", "yes")
        tokens = bind_request_context(request_id, debug)
        try:
            response = await call_next(request)
        finally:
            reset_request_context(*tokens)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    @app.get("/healthz")
    def healthz():
        return {"ok": True}

    return app


app = create_app()
