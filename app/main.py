"""
Main FastAPI application for the booking escrow API.
Serves bookings, calls, wallets, health and metrics.
"""
import logging
import time
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.routes import bookings, calls, health, wallets
from app.core.config import settings
from app.core.exceptions import BookingError
from app.core.logging import configure_logging
from app.utils.metrics import router as metrics_router


configure_logging()
logger = logging.getLogger("app.http")

app = FastAPI(
    title="Booking Escrow API",
    description="Date and call bookings with wallet escrow",
    version="1.0.0",
)

# CORS
origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
if not origins:
    origins = ["http://localhost:3000", "http://127.0.0.1:3000"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    request_id = request.headers.get(settings.request_id_header) or uuid.uuid4().hex
    start = time.perf_counter()
    response = await call_next(request)
    response.headers[settings.request_id_header] = request_id
    logger.info(
        "http_request",
        extra={
            "request_id": request_id,
            "path": request.url.path,
            "method": request.method,
            "status_code": response.status_code,
            "latency_ms": round((time.perf_counter() - start) * 1000, 1),
        },
    )
    return response


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


# Routers
app.include_router(health.router, tags=["health"])
app.include_router(bookings.router)
app.include_router(calls.router)
app.include_router(wallets.router)
app.include_router(metrics_router)
