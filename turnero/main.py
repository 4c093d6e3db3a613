from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI

from .config import get_settings
from .deps import Services, build_services
from .logging_config import configure_logging
from .metrics import metrics
from .routers import reminders, whatsapp

logger = logging.getLogger(__name__)


def create_app(services: Services | None = None) -> FastAPI:
    """Build the FastAPI app.

    Tests pass pre-built ``services``; otherwise they are built from the
    environment when the app starts.
    """
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        built = services or build_services(get_settings())
        app.state.services = built
        if built.settings.start_reminder_worker:
            built.worker.start()
        try:
            yield
        finally:
            try:
                await built.worker.stop()
            except Exception:
                logger.warning("reminder_worker_stop_failed", exc_info=True)
            await built.aclose()

    app = FastAPI(
        title="Turnero",
        description="WhatsApp appointment booking for small businesses.",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    app.include_router(whatsapp.router, prefix="/v1/whatsapp", tags=["whatsapp"])
    app.include_router(reminders.router, prefix="/v1/reminders", tags=["reminders"])

    @app.get("/healthz", tags=["health"])
    async def health_check() -> dict:
        built: Services | None = getattr(app.state, "services", None)
        if built is None:
            return {"status": "starting"}
        degraded = built.store.degraded
        return {
            "status": "degraded" if degraded else "ok",
            "conversation_store": {
                "backend": built.store.backend,
                "degraded": degraded,
            },
            "reminder_scheduler": {"backend": built.scheduler.backend},
        }

    @app.get("/metrics", tags=["metrics"])
    async def get_metrics() -> dict:
        return metrics.as_dict()

    return app


app = create_app()
