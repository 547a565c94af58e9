"""WhatsApp Cloud API client: send text replies, download inbound media."""

from typing import Optional

import httpx

from app.config import Settings, settings
from app.logging_config import get_logger
from app.schemas.message import InlineImage

logger = get_logger("whatsapp_service")

GRAPH_BASE_URL = "https://graph.facebook.com"


class WhatsAppClient:
    def __init__(
        self,
        token: Optional[str],
        phone_number_id: Optional[str],
        api_version: str = "v17.0",
        timeout_seconds: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token = token
        self.phone_number_id = phone_number_id
        self.api_version = api_version
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "WhatsAppClient":
        return cls(
            token=config.whatsapp_token,
            phone_number_id=config.whatsapp_phone_number_id,
            api_version=config.whatsapp_api_version,
            timeout_seconds=config.send_timeout_seconds,
        )

    @property
    def messages_url(self) -> str:
        return f"{GRAPH_BASE_URL}/{self.api_version}/{self.phone_number_id}/messages"

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.token}"}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport)

    async def send_text(self, phone: str, message: str) -> bool:
        """Send a text message. True only when the API returns a message id."""
        if not self.token or not self.phone_number_id:
            logger.error("WhatsApp credentials missing (WHATSAPP_TOKEN / WHATSAPP_PHONE_NUMBER_ID)")
            return False
        if not phone or not message:
            logger.warning(f"send_text: missing phone={bool(phone)} or message={bool(message)}")
            return False

        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": phone,
            "type": "text",
            "text": {"preview_url": False, "body": message},
        }
        try:
            async with self._client() as client:
                response = await client.post(self.messages_url, headers=self._headers(), json=payload)
        except httpx.HTTPError as e:
            logger.error(f"Error sending WhatsApp message: {e}")
            return False

        logger.info(f"WhatsApp send response: status={response.status_code}, body={response.text[:200]}")
        if response.status_code != 200:
            return False
        try:
            data = response.json()
        except ValueError:
            return False
        return bool(data.get("messages"))

    async def fetch_media(self, media_id: str, mime_type: Optional[str] = None) -> Optional[InlineImage]:
        """Resolve a media id to its URL and download the bytes. None on any failure."""
        if not self.token or not media_id:
            return None
        try:
            async with self._client() as client:
                lookup = await client.get(
                    f"{GRAPH_BASE_URL}/{self.api_version}/{media_id}", headers=self._headers()
                )
                if lookup.status_code != 200:
                    logger.warning(
                        "Media lookup failed",
                        extra={"context": {"media_id": media_id, "status": lookup.status_code}},
                    )
                    return None
                meta = lookup.json()
                url = meta.get("url")
                if not url:
                    return None
                download = await client.get(url, headers=self._headers())
                if download.status_code != 200 or not download.content:
                    logger.warning(
                        "Media download failed",
                        extra={"context": {"media_id": media_id, "status": download.status_code}},
                    )
                    return None
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Media fetch error: {e}", extra={"context": {"media_id": media_id}})
            return None

        return InlineImage(
            mime_type=meta.get("mime_type") or mime_type or "image/jpeg",
            data=download.content,
        )
