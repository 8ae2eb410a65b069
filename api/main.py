"""
Order Fulfillment Engine API - Main Application.

FastAPI application with CORS enabled for frontend communication.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api import __version__
from domain.errors import ErrorKind, InvariantViolationError
from services.settings import EngineSettings

settings = EngineSettings.from_env()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Create FastAPI application
app = FastAPI(
    title="Order Fulfillment Engine API",
    description="REST API for carts, checkout, payment, shipping and refunds",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
)

# Configure CORS - Allow all origins for development
# TODO: Restrict origins in production
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Allow all origins for demo
    allow_credentials=True,
    allow_methods=["*"],  # Allow all HTTP methods
    allow_headers=["*"],  # Allow all headers
)


@app.exception_handler(InvariantViolationError)
def invariant_violation_handler(request: Request, exc: InvariantViolationError):
    """Ledger corruption halts the request; nothing is repaired."""
    logger.critical("Invariant violation on %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=500,
        content={"detail": {"kind": ErrorKind.INVARIANT_VIOLATION.value, "message": exc.message, "details": {}}},
    )


@app.exception_handler(RuntimeError)
def store_failure_handler(request: Request, exc: RuntimeError):
    logger.error("Store failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": f"Internal error: {exc}"})


@app.get("/health", tags=["Health"])
def health_check():
    """
    Health check endpoint.

    Returns the API status and version.
    """
    return {
        "status": "healthy",
        "version": __version__,
        "service": "order-fulfillment-engine-api"
    }


@app.get("/", tags=["Root"])
def root():
    """
    Root endpoint with API information.
    """
    return {
        "message": "Order Fulfillment Engine API",
        "version": __version__,
        "docs": "/docs",
        "health": "/health"
    }


# Import and include routers
from api.routers import carts, inventory, orders, payments, refunds, shipping

app.include_router(carts.router, prefix="/api/v1", tags=["Carts"])
app.include_router(shipping.router, prefix="/api/v1", tags=["Shipping"])
app.include_router(orders.router, prefix="/api/v1", tags=["Orders"])
app.include_router(payments.router, prefix="/api/v1", tags=["Payments"])
app.include_router(refunds.router, prefix="/api/v1", tags=["Refunds"])
app.include_router(inventory.router, prefix="/api/v1", tags=["Inventory"])
