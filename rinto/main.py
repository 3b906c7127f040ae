# Application entrypoint: configures middleware, startup routines, and API routers.
import logging
import os
import threading
import time

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .db import Base, DATABASE_URL, engine
from .payments import router as payments_router
from .redis_client import truthy
from .routes.availability import router as availability_router
from .routes.bookings import router as bookings_router
from .routes.reviews import router as reviews_router
from .sweepers import run_sweeps

logger = logging.getLogger("rinto.main")

# Background sweeper settings: disable in tests or when an external scheduler calls the sweeps
SWEEPER_ENABLED = truthy(os.getenv("SWEEPER_ENABLED", "true"))
SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "60"))


def _start_sweeper(interval_seconds: int = 60) -> None:
    """
    Launch a daemon thread that periodically expires unpaid holds and completes ended bookings.

    Errors are logged and the sweep is retried on the next interval.
    """
    def _loop() -> None:
        while True:
            try:
                counts = run_sweeps()
                logger.debug("sweep.tick", extra=counts)
            except Exception:
                logger.exception("sweep.failed")
            time.sleep(interval_seconds)

    t = threading.Thread(target=_loop, name="booking-sweeper", daemon=True)
    t.start()


# Parse CORS origins from a comma-separated env var.
# Note: '*' cannot be used with allow_credentials=True; we fall back to explicit localhost origins for dev.
def _parse_cors_origins(env_value: str | None) -> list[str]:
    default_dev_origins = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
    if not env_value:
        return default_dev_origins
    origins = [o.strip() for o in env_value.split(",") if o.strip()]
    if "*" in origins:
        return default_dev_origins
    return origins


app = FastAPI(title="Rinto Booking API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=_parse_cors_origins(os.getenv("CORS_ORIGINS")),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup() -> None:
    # For local SQLite, auto-create tables; production DBs rely on Alembic migrations.
    if DATABASE_URL.startswith("sqlite"):
        Base.metadata.create_all(bind=engine)
    if SWEEPER_ENABLED:
        _start_sweeper(interval_seconds=SWEEP_INTERVAL_SECONDS)


# Simple liveness endpoint for container orchestrators and uptime checks
@app.get("/healthz")
def healthz() -> dict:
    return {"status": "ok"}


app.include_router(payments_router, prefix="", tags=["payments"])
app.include_router(bookings_router, prefix="/api/v1", tags=["bookings"])
app.include_router(availability_router, prefix="/api/v1", tags=["availability"])
app.include_router(reviews_router, prefix="/api/v1", tags=["reviews"])
