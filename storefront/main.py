import logging

from fastapi import FastAPI

from . import config
from .database import SessionLocal, engine
from .exchange_rates import ExchangeRateRefresher, build_rate_refresh_job, ensure_base_currency
from .models import Base
from .reservations import build_reservation_cleanup_job
from .routers import currency_router

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Storefront Service",
    description="Stock reservations and multi-currency pricing for the storefront",
    version="1.0.0",
)

app.include_router(currency_router.router)

app.state.rate_refresher = ExchangeRateRefresher(SessionLocal)
app.state.jobs = [
    build_reservation_cleanup_job(SessionLocal),
    build_rate_refresh_job(app.state.rate_refresher),
]


@app.on_event("startup")
def _startup() -> None:
    Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        ensure_base_currency(db)
    finally:
        db.close()

    if not config.BACKGROUND_JOBS_ENABLED:
        logger.info("Background jobs disabled")
        return
    for job in app.state.jobs:
        job.start()


@app.on_event("shutdown")
def _shutdown() -> None:
    for job in app.state.jobs:
        job.stop()


@app.get("/")
def root():
    return {
        "service": "Storefront Service",
        "status": "running",
        "version": "1.0.0",
    }


@app.get("/health")
def health_check():
    last_updated = app.state.rate_refresher.last_updated
    return {
        "status": "healthy",
        "service": "storefront-service",
        "rates_last_updated": last_updated.isoformat() if last_updated else None,
        "jobs": {job.name: job.is_running for job in app.state.jobs},
    }
