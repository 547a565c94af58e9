import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError
from starlette.requests import ClientDisconnect

from app.config import settings
from app.logging_config import get_logger
from app.schemas.message import InboundEvent
from app.schemas.webhook import WebhookResponse, WhatsAppMessage, WhatsAppValue, WhatsAppWebhookPayload
from app.services.alert_service import alert_warning
from app.services.pipeline import MessagePipeline, get_pipeline

logger = get_logger("webhook")

router = APIRouter()

_secret_missing_warned = False


def verify_signature(raw_body: bytes, signature_header: Optional[str], app_secret: str) -> bool:
    """Check Meta's X-Hub-Signature-256 header (sha256=<hex hmac of the raw body>)."""
    if not signature_header or not signature_header.startswith("sha256="):
        return False
    expected = hmac.new(app_secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected.encode(), signature_header.split("=", 1)[1].encode())


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def _to_event(message: WhatsAppMessage, names: dict[str, str]) -> InboundEvent:
    message_type = (message.type or "").lower()
    event = InboundEvent(
        phone=message.from_,
        display_name=names.get(message.from_),
        external_message_id=message.id,
        sent_at=_parse_timestamp(message.timestamp),
        message_type="unsupported",
    )
    if message_type == "text" and message.text is not None:
        event.message_type = "text"
        event.text = message.text.body
    elif message_type == "image" and message.image is not None:
        event.message_type = "image"
        event.media_id = message.image.id
        event.media_mime_type = message.image.mime_type
        event.text = message.image.caption or ""
    return event


def extract_events(payload: WhatsAppWebhookPayload) -> list[InboundEvent]:
    """Flatten a Cloud API delivery into inbound customer messages. Status callbacks yield nothing."""
    events: list[InboundEvent] = []
    for entry in payload.entry:
        for change in entry.changes:
            value: WhatsAppValue = change.value
            names = {
                contact.wa_id: contact.profile.name
                for contact in value.contacts
                if contact.wa_id and contact.profile and contact.profile.name
            }
            for message in value.messages:
                events.append(_to_event(message, names))
    return events


@router.get("/webhook")
async def verify_webhook(
    hub_mode: Optional[str] = Query(None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(None, alias="hub.challenge"),
):
    """Meta subscription handshake: echo the challenge when the token matches."""
    if not hub_mode or not hub_verify_token:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing verification parameters")
    expected = settings.whatsapp_verify_token
    if hub_mode == "subscribe" and expected and hmac.compare_digest(hub_verify_token.encode(), expected.encode()):
        logger.info("Webhook verified")
        return PlainTextResponse(hub_challenge or "")
    logger.warning("Webhook verification rejected", extra={"context": {"mode": hub_mode}})
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Verification failed")


@router.post("/webhook", response_model=WebhookResponse)
async def handle_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    pipeline: MessagePipeline = Depends(get_pipeline),
):
    """Accept a delivery, acknowledge fast, process each message in the background."""
    global _secret_missing_warned

    try:
        raw = await request.body()
    except ClientDisconnect:
        logger.info("Webhook client disconnected during body read")
        return WebhookResponse(success=True, message="Client disconnected")

    if settings.whatsapp_app_secret:
        if not verify_signature(raw, request.headers.get("X-Hub-Signature-256"), settings.whatsapp_app_secret):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")
    elif not _secret_missing_warned:
        _secret_missing_warned = True
        await alert_warning("Webhook signature check disabled (WHATSAPP_APP_SECRET not set)")

    if not raw or not raw.strip():
        return WebhookResponse(success=True, message="Empty payload")

    try:
        payload = WhatsAppWebhookPayload.model_validate(json.loads(raw))
    except ValueError as exc:
        # ValidationError is a ValueError too.
        logger.warning(
            "Webhook payload rejected",
            extra={
                "context": {
                    "error": str(exc)[:300],
                    "validation": isinstance(exc, ValidationError),
                    "body_preview": raw[:200].decode("utf-8", "ignore"),
                }
            },
        )
        return WebhookResponse(success=False, message="Invalid webhook payload")

    events = extract_events(payload)
    for event in events:
        background_tasks.add_task(pipeline.process_event, event)

    logger.info("Webhook accepted", extra={"context": {"messages": len(events)}})
    return WebhookResponse(success=True, message="Accepted", accepted=len(events))
