import asyncio
import contextlib
import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from storefront import workers
from storefront.admin import AdminOrderOps
from storefront.api import order_router, payments_router, system_router
from storefront.catalog import CatalogClient
from storefront.config import Settings
from storefront.db import Database
from storefront.errors import StorefrontError
from storefront.messaging import EventPublisher
from storefront.monitor import AvailabilityMonitor
from storefront.orders import OrderStateMachine
from storefront.payments import PaymentReconciler
from storefront.stores import InMemoryStore, SqlStore, StoreSelector

logger = logging.getLogger("storefront.main")


async def seed_admin(stores: StoreSelector, settings: Settings) -> None:
    if not settings.ADMIN_EMAIL or not settings.ADMIN_PASSWORD:
        return
    try:
        if await stores.run(lambda store: store.find_user_by_email(settings.ADMIN_EMAIL)) is None:
            await stores.run(lambda store: store.create_user(
                "Admin", settings.ADMIN_EMAIL, settings.ADMIN_PASSWORD, is_admin=True
            ))
            logger.info("[Startup] Seeded admin user %s", settings.ADMIN_EMAIL)
    except StorefrontError as e:
        logger.warning("[Startup] Could not seed admin user: %s", e.message)


def _validation_message(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())[1:])
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or "Invalid request"


async def storefront_error_handler(request: Request, exc: StorefrontError):
    if exc.status_code >= 500:
        logger.error("[API] %s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"message": _validation_message(exc)})


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": str(exc.detail)})


async def unexpected_error_handler(request: Request, exc: Exception):
    # детали только в лог, клиенту общий ответ
    logger.error("[API] Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"message": "Internal server error"})


def create_app(settings: Settings | None = None, database: Database | None = None) -> FastAPI:
    settings = settings or Settings()
    database = database or Database(
        settings.database_url,
        echo=settings.DB_ECHO,
        connect_timeout=settings.DB_CONNECT_TIMEOUT,
    )
    monitor = AvailabilityMonitor(
        database,
        strict=settings.strict,
        base_delay=settings.RECONNECT_BASE_DELAY,
        max_attempts=settings.RECONNECT_MAX_ATTEMPTS,
        check_interval=settings.HEALTH_CHECK_INTERVAL,
    )
    stores = StoreSelector(
        SqlStore(database, on_failure=monitor.report_failure),
        InMemoryStore(),
        monitor,
        strict=settings.strict,
    )
    catalog = None
    if settings.CATALOG_BASE_URL:
        catalog = CatalogClient(settings.CATALOG_BASE_URL, timeout=settings.CATALOG_TIMEOUT)
    orders = OrderStateMachine(stores, catalog=catalog)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # База: первое подключение, дальше монитор сам
        await monitor.start()
        await seed_admin(stores, settings)

        publisher = None
        if settings.rabbit_url:
            publisher = EventPublisher(settings.rabbit_url)
            await publisher.connect()
            app.state.outbox_task = asyncio.create_task(workers.outbox_publisher(
                stores, publisher, settings.OUTBOX_POLL_INTERVAL, settings.OUTBOX_BATCH_SIZE
            ))

        yield

        if app.state.outbox_task is not None:
            app.state.outbox_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await app.state.outbox_task
        if publisher is not None:
            await publisher.close()
        await monitor.shutdown()

    app = FastAPI(title="Storefront Orders Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.monitor = monitor
    app.state.stores = stores
    app.state.orders = orders
    app.state.reconciler = PaymentReconciler(
        orders,
        poll_attempts=settings.PAYMENT_POLL_ATTEMPTS,
        poll_delay=settings.PAYMENT_POLL_DELAY,
    )
    app.state.admin = AdminOrderOps(orders)
    app.state.outbox_task = None
    app.state.started_at = time.monotonic()

    app.include_router(order_router)
    app.include_router(system_router)
    app.include_router(payments_router)

    app.add_exception_handler(StorefrontError, storefront_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)
    return app


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    uvicorn.run("storefront.main:create_app", factory=True, host="0.0.0.0", port=8000)
