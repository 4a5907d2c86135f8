"""FastAPI application exposing admission control."""

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Request

from gatekeeper.admission import AdmissionController
from gatekeeper.api.routes import router as api_router
from gatekeeper.clock import Clock, SystemClock
from gatekeeper.config import Settings, settings as app_settings
from gatekeeper.errors import StoreUnavailable
from gatekeeper.retention import WindowPruner
from gatekeeper.scheduler import SchedulerService
from gatekeeper.security import RequestInspector, SuspicionMiddleware, UrlValidator
from gatekeeper.store import AdmissionStore, initialize_store, shutdown_store

logging.basicConfig(
    level=getattr(logging, app_settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the store, controller and retention job; tear them down on exit."""
    cfg: Settings = app.state.settings
    clock: Clock = app.state.clock
    logger.info("Starting Gatekeeper API...")

    owns_store = app.state.store is None
    if owns_store:
        store = await initialize_store()
    else:
        store = app.state.store
        try:
            await store.connect()
        except StoreUnavailable as e:
            logger.warning(f"Admission store {store.name} not ready at startup: {e}")

    app.state.store = store
    app.state.controller = AdmissionController.from_settings(store, cfg, clock=clock)

    scheduler = SchedulerService(timezone=cfg.timezone)
    scheduler.schedule_pruning(
        WindowPruner(store, clock, cfg.window_retention_days),
        interval_minutes=cfg.pruning_interval_minutes,
    )
    scheduler.start()
    app.state.scheduler = scheduler
    logger.info(f"Admission control ready on {store.name} store")

    yield

    logger.info("Shutting down Gatekeeper API...")
    await scheduler.stop()
    app.state.controller = None
    if owns_store:
        await shutdown_store()
        app.state.store = None


def create_app(
    settings: Settings | None = None,
    store: AdmissionStore | None = None,
    clock: Clock | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Settings to use (defaults to the environment)
        store: Pre-built store; the global store is used when omitted
        clock: Time source (defaults to the system clock)
    """
    cfg = settings or app_settings
    app = FastAPI(
        title="Gatekeeper",
        description="Admission control: daily quotas, window limits and adaptive blocking",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.settings = cfg
    app.state.store = store
    app.state.clock = clock or SystemClock(cfg.timezone)
    app.state.controller = None

    if cfg.inspect_requests:
        inspector = RequestInspector(
            max_payload_bytes=cfg.max_payload_bytes,
            url_validator=UrlValidator(cfg.allowed_domains),
        )
        app.add_middleware(SuspicionMiddleware, inspector=inspector)
        logger.info("Request inspection enabled")

    # Request timing middleware
    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        start_time = time.perf_counter()
        response = await call_next(request)
        process_time = (time.perf_counter() - start_time) * 1000
        response.headers["X-Process-Time-Ms"] = f"{process_time:.2f}"
        return response

    app.include_router(api_router, prefix="/v1")

    @app.get("/health")
    async def health_check() -> dict[str, Any]:
        store_health: dict[str, Any] = {"backend": None, "connected": False}
        if app.state.store is not None:
            store_health = await app.state.store.health_check()
        return {
            "status": "healthy" if store_health.get("connected") else "degraded",
            "version": VERSION,
            "store": store_health,
        }

    return app


# Create app instance
app = create_app()
