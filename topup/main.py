# topup/main.py
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from topup.core.config import settings
from topup.core.db import close_db_async, health_check_db_async, init_db_async
from topup.core.exceptions import register_exception_handlers
from topup.core.logging import LoggingContextMiddleware, get_logger, setup_logging
from topup.routers.payments import router as payments_router

logger = get_logger(__name__)


# ======================================================================================
# LIFESPAN (startup -> yield -> shutdown)
# ======================================================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info(
        "Application startup",
        environment=settings.ENVIRONMENT,
        version=settings.VERSION,
        gateway_mode=settings.PAYMENT_GATEWAY_MODE,
    )
    await init_db_async()
    try:
        yield
    finally:
        await close_db_async()
        logger.info("Application shutdown complete")


# ======================================================================================
# APP FACTORY
# ======================================================================================
def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        debug=settings.DEBUG,
        lifespan=lifespan,
    )

    app.add_middleware(LoggingContextMiddleware)
    register_exception_handlers(app)
    app.include_router(payments_router)

    @app.get("/health")
    async def health() -> Any:
        db = await health_check_db_async()
        ok = bool(db.get("ok"))
        body = {"status": "ok" if ok else "degraded", "database": db, **settings.build_info()}
        return JSONResponse(status_code=200 if ok else 503, content=body)

    return app


app = create_app()
