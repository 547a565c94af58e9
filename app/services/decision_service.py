"""Decision step: ask the model what to do with a customer message and gate its answer.

The model sees the assembled context and returns one JSON object matching
DECISION_JSON_SCHEMA. The answer becomes a mutation variant only when every
field that mutation needs is present and parseable; otherwise it is a reply.
"""

import json
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from pydantic import ValidationError

from app.config import Settings, settings
from app.logging_config import get_logger
from app.schemas.context import DecisionContext
from app.schemas.decision import (
    DECISION_JSON_SCHEMA,
    CancelBooking,
    CreateBooking,
    Decision,
    DecisionAction,
    DecisionPayload,
    ReplyOnly,
    UpdateBooking,
)
from app.schemas.message import InlineImage
from app.services.llm.base import LLMError, LLMProvider
from app.services.result import ErrorCode, Result

logger = get_logger("decision_service")

FALLBACK_REPLY = "Sorry, I couldn't process your message just now. Please try again in a moment."
INCOMPLETE_BOOKING_REPLY = (
    "I still need a few details before I can confirm this. "
    "Could you let me know the date, time and number of guests?"
)

DATE_FORMAT = "%d/%m/%Y"
TIME_FORMATS = ("%H:%M", "%H:%M:%S", "%I:%M %p", "%I:%M%p", "%I %p", "%I%p")
DISPLAY_FORMAT = "%d/%m/%Y %H:%M"

RULES_TEMPLATE = """General Instructions:
1. Use the customer's name in your responses naturally.
2. All dates and times you see and return are local restaurant time ({timezone}).
3. Don't mention anything technical to the customer (date formats, timezones, ids).
4. Keep messages short and concise.
5. Return dates as DD/MM/YYYY and times as HH:MM (24-hour). Use null for anything unknown.

Booking Placement Instructions:
1. Assign a table_id from Restaurant Tables that:
  - can seat the requested number of guests (capacity);
  - is not listed in Currently Reserved Tables for an overlapping time (check date and time);
  - is a real id from Restaurant Tables, never a placeholder like "N/A".
  If no table is available, suggest other tables or other times.
2. Once the customer confirms the booking details, set action to "confirm_booking" and include the chosen table_id, start and end.
3. Tell the customer that the maximum reservation time is {max_hours:g} hours.
4. Don't ask the customer about the title.
5. If the customer asks for a time in the past, kindly reject and tell them.
6. "Tomorrow" means today's date plus 1 day.

Booking Update Instructions:
1. Only fill booking_id when the customer confirms the update, using an id from Customer Bookings.
2. Once the customer confirms the updated details, set action to "confirm_update_booking" and return the updated details.
3. If the new time clashes with other bookings, recommend another time.
4. If the new party size does not fit the table, recommend another table from the list.

Booking Cancel Instructions:
1. Only fill booking_id when the customer confirms the cancellation, otherwise return null.
2. Once the customer confirms the cancellation, set action to "confirm_cancel_booking" and return that booking_id."""


def parse_local_datetime(date_str: Optional[str], time_str: Optional[str], tz: ZoneInfo) -> Optional[datetime]:
    """DD/MM/YYYY + HH:MM in restaurant time -> aware UTC datetime, or None if unparseable."""
    if not date_str or not time_str:
        return None
    try:
        day = datetime.strptime(date_str.strip(), DATE_FORMAT).date()
    except ValueError:
        return None
    clock = None
    for fmt in TIME_FORMATS:
        try:
            clock = datetime.strptime(time_str.strip().upper(), fmt).time()
            break
        except ValueError:
            continue
    if clock is None:
        return None
    return datetime.combine(day, clock, tzinfo=tz).astimezone(timezone.utc)


def parse_payload(content: str) -> Result[DecisionPayload]:
    """Parse raw model text into a DecisionPayload.

    The text must be exactly one JSON object matching DECISION_JSON_SCHEMA,
    with JSON types as declared (no coercion of "4" to 4).
    """
    if not (content or "").strip():
        return Result.failure("Empty model output", ErrorCode.INTERPRETATION_FAILED)
    try:
        return Result.success(DecisionPayload.model_validate_json(content, strict=True))
    except ValidationError as e:
        return Result.failure(
            f"Model output violates schema: {e.error_count()} errors", ErrorCode.INTERPRETATION_FAILED
        )


class DecisionInterpreter:
    def __init__(
        self,
        provider: LLMProvider,
        *,
        client_context: str,
        service_type: str,
        max_reservation_hours: float,
        timezone_name: str,
        model: Optional[str] = None,
        timeout_seconds: float = 30.0,
        max_tokens: int = 800,
    ):
        self.provider = provider
        self.client_context = client_context
        self.service_type = service_type
        self.max_reservation_hours = max_reservation_hours
        self.tz = ZoneInfo(timezone_name)
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.max_tokens = max_tokens

    @classmethod
    def from_settings(cls, provider: LLMProvider, config: Settings = settings) -> "DecisionInterpreter":
        return cls(
            provider,
            client_context=config.client_context,
            service_type=config.service_type,
            max_reservation_hours=config.max_reservation_time_hr,
            timezone_name=config.restaurant_timezone,
            model=config.llm_model,
            timeout_seconds=config.llm_timeout_seconds,
            max_tokens=config.llm_max_tokens,
        )

    def _local(self, value: datetime) -> str:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(self.tz).strftime(DISPLAY_FORMAT)

    def booking_title(self, pax: Optional[int]) -> Optional[str]:
        if not pax:
            return None
        return f"{self.service_type} Reservation for {pax} Pax"

    def build_prompt(self, context: DecisionContext, customer_name: Optional[str], text: str, now: datetime) -> str:
        tables = [{"id": table.table_id, "description": table.description} for table in context.tables]
        reserved = [
            {"table_id": slot.table_id, "start": self._local(slot.start), "end": self._local(slot.end)}
            for slot in context.reserved_slots
        ]
        history = [
            {"sender": entry.sender, "message": entry.message, "time": self._local(entry.timestamp)}
            for entry in context.chat_history
        ]
        bookings = [
            {
                "booking_id": booking.booking_id,
                "table_id": booking.table_id,
                "table_number": booking.table_number,
                "pax": booking.pax,
                "status": booking.status,
                "start": self._local(booking.start),
                "end": self._local(booking.end),
                "notes": booking.notes,
            }
            for booking in context.customer_bookings
        ]

        sections = [
            f"Today's date and time now: {self._local(now)} ({now.astimezone(self.tz).strftime('%A')})",
            f"Customer name: {customer_name or 'unknown'}",
            f"Customer Chat History (for context):\n{json.dumps(history, ensure_ascii=False)}",
            f"Restaurant Tables:\n{json.dumps(tables, ensure_ascii=False)}",
            f"Currently Reserved Tables:\n{json.dumps(reserved, ensure_ascii=False)}",
            f"Customer Bookings:\n{json.dumps(bookings, ensure_ascii=False)}",
        ]
        if context.degraded:
            sections.append(
                "Note: these lists could not be loaded and may be incomplete: " + ", ".join(context.degraded)
            )
        sections.append(RULES_TEMPLATE.format(timezone=self.tz.key, max_hours=self.max_reservation_hours))
        sections.append(f'Conversation:\n"{text}"')
        return "\n=========================================\n".join(sections)

    def build_messages(
        self,
        context: DecisionContext,
        customer_name: Optional[str],
        text: str,
        image: Optional[InlineImage],
        now: datetime,
    ) -> list[dict]:
        prompt = self.build_prompt(context, customer_name, text, now)
        if image is not None:
            user_content = [
                {"type": "text", "text": prompt},
                {"type": "image_url", "image_url": {"url": image.data_url}},
            ]
        else:
            user_content = prompt
        return [
            {"role": "system", "content": self.client_context},
            {"role": "user", "content": user_content},
        ]

    def gate(self, payload: DecisionPayload, customer_id: str) -> Decision:
        """Turn a raw payload into a decision variant; incomplete mutations become replies."""
        action = payload.action
        try:
            if action == DecisionAction.CONFIRM_BOOKING:
                return CreateBooking(
                    reply=payload.message,
                    customer_id=customer_id,
                    table_id=(payload.table_id or "").strip(),
                    title=self.booking_title(payload.num_guests),
                    pax=payload.num_guests,
                    start=parse_local_datetime(payload.start_date, payload.start_time, self.tz),
                    end=parse_local_datetime(payload.end_date, payload.end_time, self.tz),
                    type=self.service_type,
                    notes=payload.special_requests,
                )
            if action == DecisionAction.CONFIRM_UPDATE_BOOKING:
                return UpdateBooking(
                    reply=payload.message,
                    booking_id=(payload.booking_id or "").strip(),
                    table_id=(payload.table_id or "").strip() or None,
                    pax=payload.num_guests,
                    start=parse_local_datetime(payload.start_date, payload.start_time, self.tz),
                    end=parse_local_datetime(payload.end_date, payload.end_time, self.tz),
                    notes=payload.special_requests,
                )
            if action == DecisionAction.CONFIRM_CANCEL_BOOKING:
                return CancelBooking(reply=payload.message, booking_id=(payload.booking_id or "").strip())
        except ValidationError as e:
            fields = sorted({str(err["loc"][0]) for err in e.errors() if err.get("loc")})
            logger.info(
                f"Mutation gate miss for {action.value}",
                extra={"context": {"missing_or_invalid": fields}},
            )
            return ReplyOnly(action=action, reply=INCOMPLETE_BOOKING_REPLY)

        return ReplyOnly(action=action, reply=payload.message)

    async def interpret(
        self,
        context: DecisionContext,
        customer_id: str,
        customer_name: Optional[str],
        text: str,
        image: Optional[InlineImage] = None,
        now: Optional[datetime] = None,
    ) -> Result[Decision]:
        """Single model call; any failure is interpretation_failed."""
        now = now or datetime.now(timezone.utc)
        messages = self.build_messages(context, customer_name, text, image, now)

        try:
            response = await self.provider.generate(
                messages,
                model=self.model,
                max_tokens=self.max_tokens,
                response_schema=DECISION_JSON_SCHEMA,
                timeout_seconds=self.timeout_seconds,
            )
        except LLMError as e:
            logger.error(f"Decision model call failed: {e}")
            return Result.failure(str(e), ErrorCode.INTERPRETATION_FAILED)

        parsed = parse_payload(response.content)
        if not parsed.ok:
            logger.warning(
                "Decision output rejected",
                extra={"context": {"error": parsed.error, "preview": (response.content or "")[:200]}},
            )
            return Result.failure(parsed.error, ErrorCode.INTERPRETATION_FAILED)

        payload = parsed.value
        if not payload.message.strip():
            return Result.failure("Model returned an empty reply", ErrorCode.INTERPRETATION_FAILED)

        decision = self.gate(payload, customer_id)
        logger.info(
            "Decision interpreted",
            extra={"context": {"action": payload.action.value, "kind": decision.kind, "model": response.model}},
        )
        return Result.success(decision)
