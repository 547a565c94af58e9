"""Assemble the bounded context handed to the decision step."""

import asyncio
from typing import Optional

from app.config import settings
from app.logging_config import get_logger
from app.schemas.context import DecisionContext
from app.services.booking_store import BookingStore, call_store

logger = get_logger("context_service")


async def assemble_context(
    store: BookingStore,
    restaurant_id: str,
    customer_id: str,
    history_limit: Optional[int] = None,
    timeout: Optional[float] = None,
) -> DecisionContext:
    """Read tables, reserved slots, chat history and customer bookings concurrently.

    A failed read leaves its slice empty and is listed in `degraded`; it never
    fails the whole assembly.
    """
    if history_limit is None:
        history_limit = settings.chat_history_limit
    if timeout is None:
        timeout = settings.store_timeout_seconds

    reads = {
        "tables": call_store(store.list_tables, restaurant_id, timeout=timeout),
        "reserved_slots": call_store(store.list_confirmed_slots, restaurant_id, timeout=timeout),
        "chat_history": call_store(
            store.list_chat_history, restaurant_id, customer_id, history_limit, timeout=timeout
        ),
        "customer_bookings": call_store(store.list_customer_bookings, restaurant_id, customer_id, timeout=timeout),
    }
    results = await asyncio.gather(*reads.values())

    context = DecisionContext()
    for name, result in zip(reads.keys(), results):
        if result.ok:
            setattr(context, name, result.value or [])
            continue
        context.degraded.append(name)
        logger.warning(
            f"Context read failed: {name}",
            extra={"context": {"customer_id": customer_id, "error": result.error, "code": result.error_code}},
        )

    if len(context.chat_history) > history_limit:
        context.chat_history = context.chat_history[-history_limit:]
    return context
