"""Duplicate detection for inbound customer messages."""

from datetime import datetime
from enum import Enum
from typing import Optional

from app.config import settings
from app.logging_config import get_logger
from app.schemas.message import InboundEvent
from app.services.booking_store import BookingStore, as_utc, call_store

logger = get_logger("idempotency_service")


class GateVerdict(str, Enum):
    FRESH = "fresh"
    DUPLICATE = "duplicate"


async def _seen_external_id(store: BookingStore, restaurant_id: str, customer_id: str, external_id: str) -> bool:
    result = await call_store(
        store.has_external_message,
        restaurant_id,
        customer_id,
        external_id,
        timeout=settings.store_timeout_seconds,
    )
    if not result.ok:
        logger.warning(
            "Dedup lookup by message id failed, treating as unseen",
            extra={"context": {"customer_id": customer_id, "error": result.error, "code": result.error_code}},
        )
        return False
    return bool(result.value)


async def _seen_same_text(
    store: BookingStore,
    restaurant_id: str,
    customer_id: str,
    text: str,
    now: datetime,
    window_seconds: float,
) -> bool:
    result = await call_store(
        store.last_customer_message_at,
        restaurant_id,
        customer_id,
        text,
        timeout=settings.store_timeout_seconds,
    )
    if not result.ok:
        logger.warning(
            "Dedup lookup by text failed, treating as unseen",
            extra={"context": {"customer_id": customer_id, "error": result.error, "code": result.error_code}},
        )
        return False
    if result.value is None:
        return False
    age = (as_utc(now) - as_utc(result.value)).total_seconds()
    return 0 <= age <= window_seconds


async def check_event(
    store: BookingStore,
    restaurant_id: str,
    customer_id: str,
    event: InboundEvent,
    now: datetime,
    window_seconds: Optional[float] = None,
) -> GateVerdict:
    """Classify an inbound event as DUPLICATE or FRESH.

    Two detectors: the channel message id was already stored for this customer,
    or the customer sent the exact same text within the dedup window. Retried
    webhook deliveries hit the first; client-side double sends hit the second.
    """
    if window_seconds is None:
        window_seconds = settings.dedup_window_seconds

    if event.external_message_id:
        if await _seen_external_id(store, restaurant_id, customer_id, event.external_message_id):
            logger.info(
                "Duplicate message id",
                extra={"context": {"customer_id": customer_id, "message_id": event.external_message_id}},
            )
            return GateVerdict.DUPLICATE

    # Placeholder texts such as "[image]" are not compared.
    text = event.text.strip()
    if text and await _seen_same_text(store, restaurant_id, customer_id, text, now, window_seconds):
        logger.info(
            "Duplicate text within window",
            extra={"context": {"customer_id": customer_id, "window_seconds": window_seconds}},
        )
        return GateVerdict.DUPLICATE

    return GateVerdict.FRESH
