import os

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")

import json
import threading
import uuid
from datetime import datetime, timezone
from typing import Optional
from unittest.mock import AsyncMock, Mock

import pytest

from app.schemas.context import BookingRecord, ChatEntry, CustomerRecord, ReservedSlot, TableInfo
from app.services.booking_executor import BookingExecutor
from app.services.booking_store import (
    BOOKING_CANCELLED,
    BOOKING_CONFIRMED,
    BookingDraft,
    BookingStore,
    as_utc,
    windows_overlap,
)
from app.services.decision_service import DecisionInterpreter
from app.services.llm.base import LLMProvider, LLMResponse
from app.services.notification_service import StaffNotifier
from app.services.pipeline import MessagePipeline
from app.services.rate_limiter import InMemoryRateLimiter
from app.services.reply_service import ReplyDispatcher
from app.services.result import ErrorCode, Result

RESTAURANT_ID = "00000000-0000-0000-0000-000000000001"
# 18:00 in Kuala Lumpur
NOW = datetime(2026, 3, 10, 10, 0, tzinfo=timezone.utc)


class FakeBookingStore(BookingStore):
    """In-memory store with the same conditional-write rules as the SQL store."""

    def __init__(self):
        self.customers: dict[str, CustomerRecord] = {}
        self.tables: dict[str, TableInfo] = {}
        self.bookings: dict[str, BookingRecord] = {}
        self.messages: list[dict] = []
        self.staff_tokens: list[str] = []
        self.failing: set[str] = set()
        self._lock = threading.Lock()

    def _forced(self, name: str) -> Optional[Result]:
        if name in self.failing:
            return Result.failure(f"{name} unavailable", ErrorCode.DB_ERROR)
        return None

    def add_table(self, table_number: str = "T1", capacity: int = 4, location: str = "indoor") -> TableInfo:
        table = TableInfo(table_id=str(uuid.uuid4()), table_number=table_number, capacity=capacity, location=location)
        self.tables[table.table_id] = table
        return table

    def add_booking(
        self,
        customer_id: str,
        table_id: str,
        start: datetime,
        end: datetime,
        pax: int = 2,
        status: str = BOOKING_CONFIRMED,
    ) -> BookingRecord:
        booking = BookingRecord(
            booking_id=str(uuid.uuid4()),
            customer_id=customer_id,
            table_id=table_id,
            table_number=self.tables[table_id].table_number if table_id in self.tables else None,
            title=f"Restaurant Reservation for {pax} Pax",
            pax=pax,
            type="Restaurant",
            status=status,
            start=start,
            end=end,
        )
        self.bookings[booking.booking_id] = booking
        return booking

    def add_message(self, customer_id: str, message: str, timestamp: datetime, sender="customer", msg_id=None):
        return self.append_chat_message(
            RESTAURANT_ID, customer_id, sender, message, timestamp=timestamp, whatsapp_msg_id=msg_id
        ).value

    def confirmed(self) -> list[BookingRecord]:
        return [b for b in self.bookings.values() if b.status == BOOKING_CONFIRMED]

    def get_or_create_customer(self, phone, name):
        if forced := self._forced("get_or_create_customer"):
            return forced
        with self._lock:
            customer = self.customers.get(phone)
            if customer is None:
                customer = CustomerRecord(customer_id=str(uuid.uuid4()), phone=phone, name=name or None)
                self.customers[phone] = customer
            elif not customer.name and name:
                customer.name = name
            return Result.success(customer)

    def has_external_message(self, restaurant_id, customer_id, external_id):
        if forced := self._forced("has_external_message"):
            return forced
        return Result.success(
            any(m["customer_id"] == customer_id and m["whatsapp_msg_id"] == external_id for m in self.messages)
        )

    def last_customer_message_at(self, restaurant_id, customer_id, text):
        if forced := self._forced("last_customer_message_at"):
            return forced
        times = [
            m["timestamp"]
            for m in self.messages
            if m["customer_id"] == customer_id and m["sender"] == "customer" and m["message"] == text
        ]
        return Result.success(max(times) if times else None)

    def append_chat_message(
        self, restaurant_id, customer_id, sender, message, *, timestamp, media_ref=None, whatsapp_msg_id=None
    ):
        if forced := self._forced("append_chat_message"):
            return forced
        with self._lock:
            entry_id = len(self.messages) + 1
            self.messages.append(
                {
                    "id": entry_id,
                    "customer_id": customer_id,
                    "sender": sender,
                    "message": message,
                    "media_ref": media_ref,
                    "whatsapp_msg_id": whatsapp_msg_id,
                    "timestamp": as_utc(timestamp),
                }
            )
            return Result.success(entry_id)

    def list_tables(self, restaurant_id):
        if forced := self._forced("list_tables"):
            return forced
        return Result.success(list(self.tables.values()))

    def list_confirmed_slots(self, restaurant_id):
        if forced := self._forced("list_confirmed_slots"):
            return forced
        return Result.success(
            [ReservedSlot(table_id=b.table_id, start=b.start, end=b.end) for b in self.confirmed()]
        )

    def list_chat_history(self, restaurant_id, customer_id, limit):
        if forced := self._forced("list_chat_history"):
            return forced
        rows = sorted(
            (m for m in self.messages if m["customer_id"] == customer_id),
            key=lambda m: (m["timestamp"], m["id"]),
        )[-limit:]
        return Result.success(
            [
                ChatEntry(message_id=m["id"], sender=m["sender"], message=m["message"], timestamp=m["timestamp"])
                for m in rows
            ]
        )

    def list_customer_bookings(self, restaurant_id, customer_id):
        if forced := self._forced("list_customer_bookings"):
            return forced
        return Result.success([b for b in self.bookings.values() if b.customer_id == customer_id])

    def get_booking(self, restaurant_id, booking_id):
        if forced := self._forced("get_booking"):
            return forced
        booking = self.bookings.get(booking_id)
        if booking is None:
            return Result.failure(f"Booking {booking_id} not found", ErrorCode.NOT_FOUND)
        return Result.success(booking.model_copy())

    def _check_slot(self, draft: BookingDraft, exclude: Optional[str] = None) -> Optional[Result]:
        table = self.tables.get(draft.table_id)
        if table is None:
            return Result.failure("table not found", ErrorCode.NOT_FOUND)
        if table.capacity < draft.pax:
            return Result.failure("table too small", ErrorCode.CAPACITY)
        for booking in self.confirmed():
            if booking.booking_id == exclude or booking.table_id != draft.table_id:
                continue
            if windows_overlap(booking.start, booking.end, draft.start, draft.end):
                return Result.failure("overlap", ErrorCode.OVERLAP)
        return None

    def create_booking_if_free(self, restaurant_id, draft):
        if forced := self._forced("create_booking_if_free"):
            return forced
        with self._lock:
            if rejected := self._check_slot(draft):
                return rejected
            booking = BookingRecord(
                booking_id=str(uuid.uuid4()),
                customer_id=draft.customer_id,
                table_id=draft.table_id,
                table_number=self.tables[draft.table_id].table_number,
                title=draft.title,
                pax=draft.pax,
                type=draft.type,
                status=BOOKING_CONFIRMED,
                notes=draft.notes,
                start=as_utc(draft.start),
                end=as_utc(draft.end),
            )
            self.bookings[booking.booking_id] = booking
            return Result.success(booking.booking_id)

    def update_booking_if_free(self, restaurant_id, booking_id, draft):
        if forced := self._forced("update_booking_if_free"):
            return forced
        with self._lock:
            booking = self.bookings.get(booking_id)
            if booking is None:
                return Result.failure("not found", ErrorCode.NOT_FOUND)
            if rejected := self._check_slot(draft, exclude=booking_id):
                return rejected
            booking.table_id = draft.table_id
            booking.pax = draft.pax
            booking.title = draft.title
            booking.notes = draft.notes
            booking.start = as_utc(draft.start)
            booking.end = as_utc(draft.end)
            booking.status = BOOKING_CONFIRMED
            return Result.success(booking_id)

    def cancel_booking(self, restaurant_id, booking_id):
        if forced := self._forced("cancel_booking"):
            return forced
        with self._lock:
            booking = self.bookings.get(booking_id)
            if booking is None:
                return Result.failure("not found", ErrorCode.NOT_FOUND)
            if booking.status == BOOKING_CANCELLED:
                return Result.success(False)
            booking.status = BOOKING_CANCELLED
            return Result.success(True)

    def list_staff_tokens(self, restaurant_id):
        if forced := self._forced("list_staff_tokens"):
            return forced
        return Result.success(list(self.staff_tokens))


class ScriptedProvider(LLMProvider):
    """LLM provider returning queued contents (or raising queued exceptions)."""

    def __init__(self, *outputs):
        self.outputs = list(outputs)
        self.calls: list[dict] = []

    async def generate(
        self, messages, model=None, temperature=0.2, max_tokens=1000, response_schema=None, timeout_seconds=None
    ):
        self.calls.append({"messages": messages, "response_schema": response_schema})
        output = self.outputs.pop(0)
        if isinstance(output, Exception):
            raise output
        return LLMResponse(content=output, model="test-model")


def decision_json(action: str, message: str = "OK", **fields) -> str:
    payload = {
        "action": action,
        "message": message,
        "name": None,
        "booking_id": None,
        "start_date": None,
        "start_time": None,
        "end_date": None,
        "end_time": None,
        "num_guests": None,
        "special_requests": None,
        "booking_title": None,
        "table_id": None,
    }
    payload.update(fields)
    return json.dumps(payload)


def make_interpreter(provider: LLMProvider) -> DecisionInterpreter:
    return DecisionInterpreter(
        provider,
        client_context="You are the reservation assistant of Test Bistro.",
        service_type="Restaurant",
        max_reservation_hours=2.0,
        timezone_name="Asia/Kuala_Lumpur",
        model="test-model",
    )


def make_executor(store: BookingStore) -> BookingExecutor:
    return BookingExecutor(
        store, RESTAURANT_ID, max_reservation_hours=2.0, service_type="Restaurant", read_timeout_seconds=1.0
    )


@pytest.fixture
def store():
    return FakeBookingStore()


@pytest.fixture
def whatsapp():
    client = Mock()
    client.send_text = AsyncMock(return_value=True)
    client.fetch_media = AsyncMock(return_value=None)
    return client


@pytest.fixture
def notifier():
    staff = Mock(spec=StaffNotifier)
    staff.notify = AsyncMock(return_value=True)
    return staff


@pytest.fixture
def build_pipeline(store, whatsapp, notifier):
    def _build(*outputs, limit: int = 3, window_seconds: float = 60.0, now: datetime = NOW) -> MessagePipeline:
        provider = ScriptedProvider(*outputs)
        pipeline = MessagePipeline(
            store=store,
            rate_limiter=InMemoryRateLimiter(limit, window_seconds),
            interpreter=make_interpreter(provider),
            executor=make_executor(store),
            dispatcher=ReplyDispatcher(store, RESTAURANT_ID, whatsapp, notifier=notifier),
            whatsapp=whatsapp,
            restaurant_id=RESTAURANT_ID,
            store_timeout_seconds=1.0,
            clock=lambda: now,
        )
        pipeline.provider = provider
        return pipeline

    return _build

