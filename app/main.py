import asyncio
import os
from datetime import datetime, timezone

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db, init_db
from app.logging_config import get_logger, setup_logging
from app.models import Booking, ChatLog, Customer, DiningTable
from app.routers import webhook
from app.services.pipeline import get_pipeline

setup_logging(settings.log_level)

app = FastAPI(
    title="Dinebot API",
    description="WhatsApp reservation assistant for restaurants",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)

sweeper_logger = get_logger("rate_sweeper")
_sweeper_task: asyncio.Task | None = None


def _is_sweeper_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.rate_limit_backend == "memory"


async def _rate_sweeper_loop() -> None:
    interval_seconds = max(settings.rate_limit_sweep_seconds, 1.0)
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            removed = get_pipeline().rate_limiter.sweep(datetime.now(timezone.utc))
            if removed:
                sweeper_logger.info("Rate windows swept", extra={"context": {"removed": removed}})
        except asyncio.CancelledError:
            break
        except Exception as exc:
            sweeper_logger.error(
                "Rate sweeper loop failed",
                extra={"context": {"error": str(exc)}},
            )


@app.on_event("startup")
async def on_startup() -> None:
    global _sweeper_task
    if settings.auto_create_tables:
        init_db()
    if not _is_sweeper_enabled():
        return
    if _sweeper_task is None or _sweeper_task.done():
        _sweeper_task = asyncio.create_task(_rate_sweeper_loop())
        sweeper_logger.info("Rate sweeper started")


@app.on_event("shutdown")
async def on_shutdown() -> None:
    global _sweeper_task
    if _sweeper_task is None:
        return
    _sweeper_task.cancel()
    try:
        await _sweeper_task
    except asyncio.CancelledError:
        pass
    _sweeper_task = None


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {
        "status": "ok",
        "customers": db.query(Customer).count(),
        "tables": db.query(DiningTable).count(),
        "bookings": db.query(Booking).count(),
        "chat_logs": db.query(ChatLog).count(),
    }
