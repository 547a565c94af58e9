from app.schemas.context import DecisionContext
from app.schemas.decision import Decision, DecisionAction, DecisionPayload
from app.schemas.message import InboundEvent
from app.schemas.webhook import WebhookResponse, WhatsAppWebhookPayload

__all__ = [
    "DecisionContext",
    "Decision",
    "DecisionAction",
    "DecisionPayload",
    "InboundEvent",
    "WebhookResponse",
    "WhatsAppWebhookPayload",
]
