# src/main.py
"""
webgate application bootstrap.

Wires the database, the session store, CSRF protection, flash messages and
view rendering in front of an externally supplied route table, and binds
the HTTP listener only once the database connection is up.

Run with ``python -m src.main``.
"""

import asyncio
import importlib
import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import APIRouter, FastAPI

from src.core.config import Settings, settings as default_settings, validate_required_settings
from src.core.exceptions import config_error
from src.core.logging_config import setup_logging
from src.core.security import CookieParameters, CsrfGuard, SessionManager
from src.core.startup import StartupSequencer
from src.core.views import ViewRenderer
from src.middleware.pipeline import Pipeline, PipelineMiddleware
from src.middleware.security_middleware import RequestTimeoutStage, RouteDeadlineMiddleware, SecurityHeadersStage
from src.middleware.stages import (
    BodyParsingStage,
    CsrfErrorStage,
    CsrfStage,
    FlashStage,
    SessionStage,
    StaticFilesStage,
    ViewContextInjector,
    ViewContextStage,
    inject_session_locals,
)
from src.services.database_service import DatabaseConfig, DatabaseService
from src.services.session_store import SessionStoreAdapter, create_session_store

logger = logging.getLogger(__name__)


def build_pipeline(
    current: Settings,
    session_manager: SessionManager,
    view_context: Optional[ViewContextInjector] = inject_session_locals
) -> Pipeline:
    """The request pipeline, in the order every request traverses it."""
    return Pipeline([
        SecurityHeadersStage(),
        RequestTimeoutStage(current.REQUEST_TIMEOUT_SECONDS),
        BodyParsingStage(current.BODY_LIMIT_BYTES),
        StaticFilesStage(current.STATIC_DIR, current.STATIC_URL_PREFIX),
        SessionStage(session_manager),
        FlashStage(),
        CsrfStage(CsrfGuard()),
        ViewContextStage(view_context),
        CsrfErrorStage(current.CSRF_ERROR_MESSAGE),
    ])


def load_routes(target: str) -> APIRouter:
    """Import an APIRouter from a ``package.module:attribute`` path."""
    module_name, _, attribute = target.partition(":")
    if not module_name or not attribute:
        raise config_error(f"ROUTES must look like 'package.module:router', got '{target}'", component="routes")

    router = getattr(importlib.import_module(module_name), attribute, None)
    if not isinstance(router, APIRouter):
        raise config_error(f"'{target}' is not an APIRouter", component="routes")
    return router


def create_app(
    current: Optional[Settings] = None,
    session_store: Optional[SessionStoreAdapter] = None,
    database: Optional[DatabaseService] = None,
    routes: Optional[APIRouter] = None,
    view_context: Optional[ViewContextInjector] = inject_session_locals
) -> FastAPI:
    """
    Assemble the application.

    The database is not connected here; ``serve()`` does that through the
    startup sequencer before the listener is bound.
    """
    current = current or default_settings
    database = database or DatabaseService(DatabaseConfig.from_settings(current))
    session_store = session_store or create_session_store(current, database)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"{current.APP_NAME} accepting requests")
        yield
        logger.info(f"{current.APP_NAME} shutting down...")
        await session_store.close()
        await database.shutdown()

    app = FastAPI(
        title=current.APP_NAME,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None
    )

    session_manager = SessionManager(
        session_store,
        current.SESSION_SECRET.get_secret_value(),
        CookieParameters.from_settings(current)
    )
    pipeline = build_pipeline(current, session_manager, view_context)

    app.state.settings = current
    app.state.database = database
    app.state.session_store = session_store
    app.state.session_manager = session_manager
    app.state.pipeline = pipeline
    app.state.views = ViewRenderer(current.VIEWS_DIR)

    # Added first so it sits inside the pipeline, directly around the routes
    app.add_middleware(RouteDeadlineMiddleware)
    app.add_middleware(PipelineMiddleware, pipeline=pipeline)

    if routes is None and current.ROUTES:
        routes = load_routes(current.ROUTES)
    if routes is not None:
        app.include_router(routes)
    else:
        logger.warning("No routes configured - every request will 404")

    return app


async def serve(current: Optional[Settings] = None, app: Optional[FastAPI] = None) -> bool:
    """
    Connect the database, then bind the listener.

    Returns False, without binding, if the database is unreachable.
    """
    current = current or default_settings
    app = app or create_app(current)
    database: DatabaseService = app.state.database
    session_store: SessionStoreAdapter = app.state.session_store

    async def listen() -> None:
        await session_store.prepare()
        logger.info(f"Listening on http://{current.HOST}:{current.PORT}")
        config = uvicorn.Config(app, host=current.HOST, port=current.PORT, log_config=None)
        await uvicorn.Server(config).serve()

    sequencer = StartupSequencer(
        database,
        listen,
        retries=current.DB_CONNECT_RETRIES,
        backoff_seconds=current.DB_CONNECT_BACKOFF_SECONDS
    )
    app.state.startup = sequencer

    return await sequencer.run()


def main() -> None:
    setup_logging()

    logger.info("=" * 60)
    logger.info(f"Starting {default_settings.APP_NAME}...")
    logger.info("=" * 60)

    if not validate_required_settings(default_settings):
        logger.warning("Some settings are missing - startup may fail")

    logger.info("Configuration:")
    logger.info(f"  - Session backend: {default_settings.SESSION_BACKEND}")
    logger.info(f"  - Static files: {default_settings.STATIC_DIR} at '{default_settings.STATIC_URL_PREFIX}'")
    logger.info(f"  - Views: {default_settings.VIEWS_DIR}")
    logger.info(f"  - Routes: {default_settings.ROUTES or 'none'}")

    if not asyncio.run(serve(default_settings)):
        sys.exit(1)


if __name__ == "__main__":
    main()
