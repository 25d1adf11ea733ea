#main.py
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

import db
from middleware import RequestContextMiddleware
from routes.admin import router as admin_router
from routes.health import router as health_router
from routes.jobs import router as jobs_router
from routes.metrics import router as metrics_router
from routes.payouts import router as payouts_router
from routes.webhooks import router as webhooks_router
from app.workers.account_poller import get_session_poller
from settings import settings

logger = logging.getLogger("gigpay.app")


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(
        "unhandled_error method=%s path=%s request_id=%s",
        request.method,
        request.url.path,
        getattr(request.state, "request_id", None),
    )
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # session pollers are daemon threads; stop them with the server
    get_session_poller().stop_all()
    if settings.STORE_BACKEND == "postgres":
        db.close_pool()


def create_app() -> FastAPI:
    app = FastAPI(title="GigPay API", version="1.0.0", lifespan=lifespan)

    app.add_middleware(RequestContextMiddleware)

    # -----------------------------
    # ROUTERS
    # -----------------------------
    app.include_router(health_router)
    app.include_router(metrics_router)
    app.include_router(jobs_router)
    app.include_router(payouts_router)
    app.include_router(webhooks_router)
    app.include_router(admin_router)

    app.add_exception_handler(Exception, unhandled_error_handler)

    return app


app = create_app()
