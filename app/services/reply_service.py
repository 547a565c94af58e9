"""Persist, send and announce the reply for one customer turn."""

from datetime import datetime, timezone
from typing import Optional

from app.config import settings
from app.logging_config import get_logger
from app.schemas.context import CustomerRecord
from app.services.alert_service import alert_critical
from app.services.booking_store import BookingStore, call_store
from app.services.notification_service import StaffNotifier
from app.services.result import ErrorCode, Result
from app.services.whatsapp_service import WhatsAppClient

logger = get_logger("reply_service")


class ReplyDispatcher:
    def __init__(
        self,
        store: BookingStore,
        restaurant_id: str,
        whatsapp: WhatsAppClient,
        notifier: Optional[StaffNotifier] = None,
    ):
        self.store = store
        self.restaurant_id = restaurant_id
        self.whatsapp = whatsapp
        self.notifier = notifier

    async def dispatch(
        self,
        customer: CustomerRecord,
        text: str,
        notify_staff: bool = False,
        notification: Optional[dict] = None,
    ) -> Result[bool]:
        """Log the reply, then send it, then optionally push staff.

        The chat log write comes first: a reply that cannot be recorded is not
        sent. Value is True when staff were notified.
        """
        logged = await call_store(
            self.store.append_chat_message,
            self.restaurant_id,
            customer.customer_id,
            "staff",
            text,
            timestamp=datetime.now(timezone.utc),
            timeout=settings.store_timeout_seconds,
        )
        if not logged.ok:
            logger.error(
                "Reply not logged, skipping send",
                extra={"context": {"customer_id": customer.customer_id, "error": logged.error}},
            )
            return Result.failure(f"chat log write failed: {logged.error}", ErrorCode.DISPATCH_FAILED)

        sent = await self.whatsapp.send_text(customer.phone, text)
        if not sent:
            logger.error("Reply send failed", extra={"context": {"customer_id": customer.customer_id}})
            await alert_critical(
                "WhatsApp send failed",
                {"customer_id": customer.customer_id, "chat_log_id": logged.value},
            )
            return Result.failure("WhatsApp send failed", ErrorCode.DISPATCH_FAILED)

        if not notify_staff or self.notifier is None or notification is None:
            return Result.success(False)
        try:
            notified = await self.notifier.notify(notification)
        except Exception as e:
            logger.warning(f"Staff notification crashed: {e}")
            notified = False
        return Result.success(notified)
