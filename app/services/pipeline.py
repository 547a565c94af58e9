"""Per-event orchestration: gate, limit, assemble, decide, mutate, reply."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from app.config import Settings, settings
from app.logging_config import LoggerAdapter, get_logger
from app.schemas.context import CustomerRecord
from app.schemas.decision import MutationOutcome
from app.schemas.message import InboundEvent
from app.services.alert_service import alert_error
from app.services.booking_executor import BookingExecutor
from app.services.booking_store import BookingStore, SqlBookingStore, as_utc, call_store
from app.services.context_service import assemble_context
from app.services.decision_service import FALLBACK_REPLY, DecisionInterpreter
from app.services.idempotency_service import GateVerdict, check_event
from app.services.llm.openai_provider import OpenAIProvider
from app.services.notification_service import StaffNotifier, build_staff_notification
from app.services.rate_limiter import RateLimiter, build_rate_limiter
from app.services.reply_service import ReplyDispatcher
from app.services.result import ErrorCode
from app.services.whatsapp_service import WhatsAppClient

logger = get_logger("pipeline")

UNSUPPORTED_REPLY = "Sorry, I can only read text messages and images. Could you type your request?"
MUTATION_FAILED_REPLY = (
    "Sorry, I couldn't complete that booking change. The table or time may no longer be available. "
    "Would you like to try another time or table?"
)


class PipelineStatus(str, Enum):
    DUPLICATE = "duplicate"
    RATE_LIMITED = "rate_limited"
    REPLIED = "replied"
    FALLBACK = "fallback"
    DISPATCH_FAILED = "dispatch_failed"
    FAILED = "failed"


@dataclass
class PipelineOutcome:
    status: PipelineStatus
    customer_id: Optional[str] = None
    decision_kind: Optional[str] = None
    mutation: Optional[MutationOutcome] = None
    error_code: Optional[str] = None
    degraded: list[str] = field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _received_at(event: InboundEvent, now: datetime) -> datetime:
    """Channel send time for the chat log, never later than the local clock."""
    if event.sent_at is None:
        return now
    return min(as_utc(event.sent_at), now)


class MessagePipeline:
    def __init__(
        self,
        store: BookingStore,
        rate_limiter: RateLimiter,
        interpreter: DecisionInterpreter,
        executor: BookingExecutor,
        dispatcher: ReplyDispatcher,
        whatsapp: WhatsAppClient,
        restaurant_id: str,
        store_timeout_seconds: float = 5.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.rate_limiter = rate_limiter
        self.interpreter = interpreter
        self.executor = executor
        self.dispatcher = dispatcher
        self.whatsapp = whatsapp
        self.restaurant_id = restaurant_id
        self.store_timeout_seconds = store_timeout_seconds
        self.clock = clock

    async def process_event(self, event: InboundEvent) -> PipelineOutcome:
        """Process one inbound message end to end. Never raises."""
        event_id = event.external_message_id or uuid.uuid4().hex
        log = LoggerAdapter(logger, {"event_id": event_id})
        try:
            return await self._process(event, log)
        except Exception as e:
            log.error(f"Event processing crashed: {e}", exc_info=True)
            await alert_error("Message pipeline crashed", {"event_id": event_id, "error": str(e)[:300]})
            return PipelineOutcome(status=PipelineStatus.FAILED, error_code="unexpected")

    async def _resolve_customer(self, event: InboundEvent, log: LoggerAdapter) -> Optional[CustomerRecord]:
        result = await call_store(
            self.store.get_or_create_customer,
            event.phone,
            event.display_name,
            timeout=self.store_timeout_seconds,
        )
        if not result.ok:
            log.error(f"Customer lookup failed: {result.error}", context={"code": result.error_code})
            return None
        return result.value

    async def _process(self, event: InboundEvent, log: LoggerAdapter) -> PipelineOutcome:
        now = self.clock()

        customer = await self._resolve_customer(event, log)
        if customer is None:
            return PipelineOutcome(status=PipelineStatus.FAILED, error_code=ErrorCode.DB_ERROR)
        log = log.bind(customer_id=customer.customer_id)
        outcome = PipelineOutcome(status=PipelineStatus.REPLIED, customer_id=customer.customer_id)

        verdict = await check_event(self.store, self.restaurant_id, customer.customer_id, event, now)
        if verdict == GateVerdict.DUPLICATE:
            log.info("Duplicate event dropped")
            outcome.status = PipelineStatus.DUPLICATE
            return outcome

        if not await self.rate_limiter.allow(customer.customer_id, now):
            log.info("Rate limited, event dropped")
            outcome.status = PipelineStatus.RATE_LIMITED
            return outcome

        persisted = await call_store(
            self.store.append_chat_message,
            self.restaurant_id,
            customer.customer_id,
            "customer",
            event.log_text,
            timestamp=_received_at(event, now),
            media_ref=event.media_id,
            whatsapp_msg_id=event.external_message_id,
            timeout=self.store_timeout_seconds,
        )
        if not persisted.ok:
            log.warning(f"Inbound message not persisted: {persisted.error}")

        if event.message_type == "unsupported":
            return await self._reply(outcome, customer, event, UNSUPPORTED_REPLY, log)

        image = None
        if event.message_type == "image" and event.media_id:
            image = await self.whatsapp.fetch_media(event.media_id, event.media_mime_type)
            if image is None:
                log.warning("Image unavailable, continuing with text only", context={"media_id": event.media_id})

        context = await assemble_context(self.store, self.restaurant_id, customer.customer_id)
        outcome.degraded = list(context.degraded)

        interpreted = await self.interpreter.interpret(
            context, customer.customer_id, customer.name, event.log_text, image=image, now=now
        )
        if not interpreted.ok:
            log.error(f"Decision failed: {interpreted.error}")
            await alert_error(
                "Decision step failed", {"customer_id": customer.customer_id, "error": interpreted.error}
            )
            outcome.status = PipelineStatus.FALLBACK
            outcome.error_code = ErrorCode.INTERPRETATION_FAILED
            return await self._reply(outcome, customer, event, FALLBACK_REPLY, log)

        decision = interpreted.value
        outcome.decision_kind = decision.kind
        reply = decision.reply

        if decision.kind != "reply":
            executed = await self.executor.execute(decision, customer.customer_id, now)
            if executed.ok:
                outcome.mutation = executed.value
            else:
                log.warning(f"Mutation failed: {executed.error}")
                outcome.status = PipelineStatus.FALLBACK
                outcome.error_code = ErrorCode.MUTATION_FAILED
                reply = MUTATION_FAILED_REPLY

        return await self._reply(outcome, customer, event, reply, log)

    async def _reply(
        self,
        outcome: PipelineOutcome,
        customer: CustomerRecord,
        event: InboundEvent,
        text: str,
        log: LoggerAdapter,
    ) -> PipelineOutcome:
        notification = build_staff_notification(
            customer.name,
            customer.phone,
            event.log_text,
            booking_action=outcome.mutation.action if outcome.mutation else None,
            booking_id=outcome.mutation.booking_id if outcome.mutation else None,
        )
        dispatched = await self.dispatcher.dispatch(customer, text, notify_staff=True, notification=notification)
        if not dispatched.ok:
            log.error(f"Reply dispatch failed: {dispatched.error}")
            outcome.status = PipelineStatus.DISPATCH_FAILED
            outcome.error_code = ErrorCode.DISPATCH_FAILED
            return outcome

        log.info(
            "Event processed",
            context={
                "status": outcome.status.value,
                "decision": outcome.decision_kind,
                "mutation": outcome.mutation.action if outcome.mutation else None,
                "staff_notified": dispatched.value,
            },
        )
        return outcome


def build_pipeline(config: Settings = settings) -> MessagePipeline:
    from app.database import SessionLocal

    store = SqlBookingStore(SessionLocal)
    whatsapp = WhatsAppClient.from_settings(config)
    provider = OpenAIProvider(api_key=config.openai_api_key, default_model=config.llm_model)
    return MessagePipeline(
        store=store,
        rate_limiter=build_rate_limiter(config),
        interpreter=DecisionInterpreter.from_settings(provider, config),
        executor=BookingExecutor.from_settings(store, config),
        dispatcher=ReplyDispatcher(
            store,
            config.restaurant_id,
            whatsapp,
            notifier=StaffNotifier.from_settings(store, config),
        ),
        whatsapp=whatsapp,
        restaurant_id=config.restaurant_id,
        store_timeout_seconds=config.store_timeout_seconds,
    )


_pipeline: Optional[MessagePipeline] = None


def get_pipeline() -> MessagePipeline:
    """Process-wide pipeline (shared rate windows and staff token cache)."""
    global _pipeline
    if _pipeline is None:
        _pipeline = build_pipeline()
    return _pipeline
