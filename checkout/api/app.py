"""
FastAPI application for checkout and payment reconciliation.

The API provides endpoints for:
- Order creation and client-side payment verification
- Provider browser returns and webhooks
- Full and partial refunds
- Operational controls (pending orders, auto-cancel sweeper)
- Health checks

Business errors raised by the use cases are ``CheckoutError`` subclasses
and are translated into JSON by a single exception handler. Anything else
is logged with its traceback and answered with a generic 500 to prevent
information leakage.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from checkout import __version__
from checkout.api.dependencies import get_container
from checkout.api.routers import admin, orders, refunds, system, webhooks
from checkout.config import setup_logging
from checkout.errors import CheckoutError

# Setup logging when module is imported
setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    container = get_container()
    if container.settings.auto_cancel_on_startup:
        sweeper = await container.get_sweeper()
        sweeper.start()
    try:
        yield
    finally:
        await container.close()
        logger.info("Checkout API shut down")


app = FastAPI(
    title="Checkout Reconciliation API",
    description="Order creation and payment reconciliation",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[get_container().settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CheckoutError)
async def checkout_error_handler(
    request: Request, exc: CheckoutError
) -> JSONResponse:
    logger.warning(
        "Request failed",
        extra={
            "path": request.url.path,
            "error_code": exc.error_code,
            "error_message": exc.message,
        },
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def unexpected_error_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    logger.error(
        "Unhandled error",
        extra={
            "path": request.url.path,
            "error_type": type(exc).__name__,
            "error_message": str(exc),
        },
        exc_info=exc,
    )
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "INTERNAL_ERROR",
            "message": "Request failed due to an internal error.",
        },
    )


app.include_router(system.router, tags=["System"])
app.include_router(admin.router, prefix="/api/orders", tags=["Admin"])
app.include_router(refunds.router, prefix="/api/orders", tags=["Refunds"])
app.include_router(webhooks.router, prefix="/api/orders", tags=["Webhooks"])
# Last: its GET /{order_id} would shadow single-segment routes added later
app.include_router(orders.router, prefix="/api/orders", tags=["Orders"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "checkout.api.app:app",
        host="0.0.0.0",
        port=8000,
        log_level="info",
    )
