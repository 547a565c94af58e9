"""Best-effort push notifications to staff devices."""

import threading
import time
from typing import Optional

import httpx

from app.config import Settings, settings
from app.logging_config import get_logger
from app.services.booking_store import BookingStore, call_store

logger = get_logger("notification_service")

PREVIEW_CHARS = 120


def build_staff_notification(
    customer_name: Optional[str],
    phone: str,
    message: str,
    booking_action: Optional[str] = None,
    booking_id: Optional[str] = None,
) -> dict:
    """Title/body/data for a staff push about one conversation turn."""
    who = customer_name or phone
    preview = message if len(message) <= PREVIEW_CHARS else message[: PREVIEW_CHARS - 3] + "..."
    title = f"Booking {booking_action}: {who}" if booking_action else f"New message from {who}"
    data = {"phone": phone}
    if booking_id:
        data["booking_id"] = booking_id
        data["action"] = booking_action
    return {"title": title, "body": preview, "data": data}


class StaffNotifier:
    def __init__(
        self,
        store: BookingStore,
        restaurant_id: str,
        push_url: str,
        token_ttl_seconds: float = 300.0,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store = store
        self.restaurant_id = restaurant_id
        self.push_url = push_url
        self.token_ttl_seconds = token_ttl_seconds
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._tokens: list[str] = []
        self._tokens_loaded_at: Optional[float] = None
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, store: BookingStore, config: Settings = settings) -> "StaffNotifier":
        return cls(
            store,
            config.restaurant_id,
            config.push_api_url,
            token_ttl_seconds=config.staff_token_ttl_seconds,
            timeout_seconds=config.send_timeout_seconds,
        )

    def _cached_tokens(self, now_ts: float) -> Optional[list[str]]:
        with self._lock:
            if self._tokens_loaded_at is None:
                return None
            if now_ts - self._tokens_loaded_at >= self.token_ttl_seconds:
                return None
            return list(self._tokens)

    async def get_tokens(self) -> list[str]:
        now_ts = time.monotonic()
        cached = self._cached_tokens(now_ts)
        if cached is not None:
            return cached

        result = await call_store(
            self.store.list_staff_tokens, self.restaurant_id, timeout=settings.store_timeout_seconds
        )
        if not result.ok:
            logger.warning(f"Staff token lookup failed: {result.error}")
            return []
        with self._lock:
            self._tokens = list(result.value or [])
            self._tokens_loaded_at = now_ts
            return list(self._tokens)

    async def notify(self, notification: dict) -> bool:
        """Push to every active staff device. Never raises."""
        tokens = await self.get_tokens()
        if not tokens:
            return False

        messages = [{"to": token, "sound": "default", **notification} for token in tokens]
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(
                    self.push_url,
                    headers={"Accept": "application/json", "Content-Type": "application/json"},
                    json=messages,
                )
        except httpx.HTTPError as e:
            logger.warning(f"Staff push failed: {e}")
            return False

        if response.status_code != 200:
            logger.warning(f"Staff push rejected: status={response.status_code}, body={response.text[:200]}")
            return False
        logger.debug(f"Staff push sent to {len(tokens)} devices")
        return True
