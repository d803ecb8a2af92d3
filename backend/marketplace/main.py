import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from marketplace.adapters.mock_notifier import MockNotificationAdapter
from marketplace.adapters.mock_payment import MockPaymentAdapter
from marketplace.api.health import router as health_router
from marketplace.api.routes_carriers import router as carriers_router
from marketplace.api.routes_matches import router as matches_router
from marketplace.api.routes_packages import router as packages_router
from marketplace.api.routes_payments import router as payments_router
from marketplace.config import settings
from marketplace.db import Database
from marketplace.errors import MarketplaceError
from marketplace.services.notification_service import NotificationDispatcher
from marketplace.services.payment_service import PaymentService, build_gateway
from marketplace.utils.log_setup import configure_logging

log = logging.getLogger(__name__)


def build_scheduler(app: FastAPI) -> BackgroundScheduler:
    scheduler = BackgroundScheduler()

    def dispatch_job():
        with app.state.database.session() as db:
            NotificationDispatcher(db, app.state.notifier).dispatch_pending()

    def reconcile_job():
        with app.state.database.session() as db:
            PaymentService(db, app.state.payment_gateway).reconcile_pending()

    scheduler.add_job(
        dispatch_job,
        "interval",
        seconds=settings.NOTIFY_DISPATCH_INTERVAL_SECONDS,
        id="dispatch_notifications",
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        reconcile_job,
        "interval",
        seconds=settings.RECONCILE_INTERVAL_SECONDS,
        id="reconcile_payments",
        max_instances=1,
        coalesce=True,
    )
    return scheduler


def register_error_handlers(app: FastAPI):
    @app.exception_handler(MarketplaceError)
    async def marketplace_error(request: Request, exc: MarketplaceError):
        if exc.status_code >= 500:
            log.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(HTTPException)
    async def http_error(request: Request, exc: HTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        msg = first.get("msg", "Invalid request")
        return JSONResponse(status_code=400, content={"error": f"{field}: {msg}" if field else msg})

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        log.exception("Unhandled error on %s %s", request.method, request.url.path)
        body = {"error": "Internal server error"}
        if settings.DEBUG:
            body["details"] = f"{type(exc).__name__}: {exc}"
        return JSONResponse(status_code=500, content=body)


def create_app(
    database: Optional[Database] = None,
    payment_gateway: Optional[MockPaymentAdapter] = None,
    notifier: Optional[MockNotificationAdapter] = None,
    start_scheduler: Optional[bool] = None,
) -> FastAPI:
    """
    Build the API. Collaborators default to the configured ones; tests pass
    their own database and gateways and usually keep the scheduler off.
    """
    if start_scheduler is None:
        start_scheduler = settings.SCHEDULER_ENABLED

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.LOG_LEVEL)
        db = database or Database()
        db.init(reset=False)
        app.state.database = db
        app.state.payment_gateway = payment_gateway or build_gateway(db.SessionLocal)
        app.state.notifier = notifier or MockNotificationAdapter(delay_ms=settings.NOTIFY_MOCK_DELAY_MS)

        scheduler = None
        if start_scheduler:
            scheduler = build_scheduler(app)
            scheduler.start()
            log.info("background jobs started")
        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.shutdown(wait=False)
            db.dispose()
            log.info("shutdown complete")

    app = FastAPI(title="Relay Marketplace - Backend", version="0.1.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.FRONTEND_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.time()
        response = await call_next(request)
        log.info(
            "%s %s - Status: %s - Time: %.4fs",
            request.method, request.url.path, response.status_code, time.time() - start_time,
        )
        return response

    register_error_handlers(app)

    app.include_router(health_router, prefix="/api", tags=["health"])
    app.include_router(matches_router)
    app.include_router(packages_router)
    app.include_router(payments_router)
    app.include_router(carriers_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("marketplace.main:app", host=settings.APP_HOST, port=settings.APP_PORT, reload=settings.DEBUG)
