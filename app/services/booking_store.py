"""Booking store: customers, tables, bookings, chat log and staff devices.

Every operation returns a Result so callers never see driver exceptions.
Booking writes are conditional: the target table row is locked, the overlap
check runs inside the same transaction, and the write commits only when the
window is free.
"""

from __future__ import annotations

import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Booking, ChatLog, Customer, DiningTable, StaffDevice
from app.schemas.context import BookingRecord, ChatEntry, CustomerRecord, ReservedSlot, TableInfo
from app.services.result import ErrorCode, Result

logger = get_logger("booking_store")

BOOKING_CONFIRMED = "confirmed"
BOOKING_CANCELLED = "cancelled"


@dataclass
class BookingDraft:
    customer_id: str
    table_id: str
    title: str
    pax: int
    type: str
    start: datetime
    end: datetime
    notes: Optional[str] = None


def as_utc(value: datetime) -> datetime:
    """Normalize to an aware UTC datetime (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def windows_overlap(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Half-open windows [start, end) share at least one instant."""
    return as_utc(start_a) < as_utc(end_b) and as_utc(start_b) < as_utc(end_a)


def _parse_uuid(value: str | uuid.UUID | None) -> Optional[uuid.UUID]:
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value).strip())
    except (TypeError, ValueError):
        return None


class BookingStore(ABC):
    """Read/write requests the pipeline issues against durable storage."""

    @abstractmethod
    def get_or_create_customer(self, phone: str, name: Optional[str]) -> Result[CustomerRecord]:
        """Find customer by phone, create if unseen, attach name if previously unknown."""

    @abstractmethod
    def has_external_message(self, restaurant_id: str, customer_id: str, external_id: str) -> Result[bool]:
        """Whether a chat message with this channel message id exists for the customer."""

    @abstractmethod
    def last_customer_message_at(
        self, restaurant_id: str, customer_id: str, text: str
    ) -> Result[Optional[datetime]]:
        """Timestamp of the newest customer message with exactly this text."""

    @abstractmethod
    def append_chat_message(
        self,
        restaurant_id: str,
        customer_id: str,
        sender: str,
        message: str,
        *,
        timestamp: datetime,
        media_ref: Optional[str] = None,
        whatsapp_msg_id: Optional[str] = None,
    ) -> Result[int]:
        """Append an immutable chat log entry and return its id."""

    @abstractmethod
    def list_tables(self, restaurant_id: str) -> Result[list[TableInfo]]:
        """Full table inventory of the restaurant."""

    @abstractmethod
    def list_confirmed_slots(self, restaurant_id: str) -> Result[list[ReservedSlot]]:
        """Window and table of every confirmed booking of the restaurant."""

    @abstractmethod
    def list_chat_history(self, restaurant_id: str, customer_id: str, limit: int) -> Result[list[ChatEntry]]:
        """Last `limit` chat messages of the customer in chronological order."""

    @abstractmethod
    def list_customer_bookings(self, restaurant_id: str, customer_id: str) -> Result[list[BookingRecord]]:
        """All bookings of the customer, past and upcoming."""

    @abstractmethod
    def get_booking(self, restaurant_id: str, booking_id: str) -> Result[BookingRecord]:
        """Single booking; fails with not_found when absent."""

    @abstractmethod
    def create_booking_if_free(self, restaurant_id: str, draft: BookingDraft) -> Result[str]:
        """Insert a confirmed booking unless the table is unknown, too small or taken."""

    @abstractmethod
    def update_booking_if_free(self, restaurant_id: str, booking_id: str, draft: BookingDraft) -> Result[str]:
        """Overwrite window/table/pax/notes and confirm, unless the new slot is taken."""

    @abstractmethod
    def cancel_booking(self, restaurant_id: str, booking_id: str) -> Result[bool]:
        """Set status to cancelled. Value is False when it already was cancelled."""

    @abstractmethod
    def list_staff_tokens(self, restaurant_id: str) -> Result[list[str]]:
        """Push tokens of active staff devices."""


async def call_store(fn: Callable[..., Result], *args, timeout: Optional[float] = None, **kwargs) -> Result:
    """Run a blocking store call off the event loop.

    With a timeout the call is abandoned (reported as failure) once it elapses.
    Without one it runs to completion; mutations use this form.
    """
    name = getattr(fn, "__name__", "store_call")
    try:
        call = asyncio.to_thread(fn, *args, **kwargs)
        if timeout is None:
            return await call
        return await asyncio.wait_for(call, timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Store call timed out: {name}", extra={"context": {"timeout_seconds": timeout}})
        return Result.failure(f"{name} timed out after {timeout}s", ErrorCode.TIMEOUT)
    except Exception as e:
        logger.error(f"Store call crashed: {name}: {e}", exc_info=True)
        return Result.failure(str(e), ErrorCode.DB_ERROR)


def _to_table_info(table: DiningTable) -> TableInfo:
    return TableInfo(
        table_id=str(table.id),
        table_number=str(table.table_number),
        capacity=table.capacity,
        location=table.location,
        movable=bool(table.movable),
        status=table.status or "available",
    )


def _to_booking_record(booking: Booking) -> BookingRecord:
    return BookingRecord(
        booking_id=str(booking.id),
        customer_id=str(booking.customer_id),
        table_id=str(booking.table_id) if booking.table_id else None,
        table_number=str(booking.table.table_number) if booking.table else None,
        title=booking.title,
        pax=booking.pax,
        type=booking.type,
        status=booking.status,
        notes=booking.notes,
        start=as_utc(booking.start_date_time),
        end=as_utc(booking.end_date_time),
    )


class SqlBookingStore(BookingStore):
    """SQLAlchemy-backed store. One short-lived session per call."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def get_or_create_customer(self, phone: str, name: Optional[str]) -> Result[CustomerRecord]:
        name = (name or "").strip() or None
        with self._session_factory() as db:
            try:
                customer = db.query(Customer).filter(Customer.phone == phone).first()
                if not customer:
                    customer = Customer(
                        id=uuid.uuid4(),
                        name=name,
                        phone=phone,
                        email="N/A",
                        created_at=datetime.now(timezone.utc),
                    )
                    db.add(customer)
                    try:
                        db.commit()
                    except IntegrityError:
                        # Concurrent first message from the same phone.
                        db.rollback()
                        customer = db.query(Customer).filter(Customer.phone == phone).one()
                    else:
                        logger.info("Customer created", extra={"context": {"customer_id": str(customer.id)}})
                elif not customer.name and name:
                    customer.name = name
                    db.commit()
                return Result.success(
                    CustomerRecord(customer_id=str(customer.id), phone=customer.phone, name=customer.name)
                )
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"get_or_create_customer failed: {e}")
                return Result.failure(str(e), ErrorCode.DB_ERROR)

    def has_external_message(self, restaurant_id: str, customer_id: str, external_id: str) -> Result[bool]:
        with self._session_factory() as db:
            try:
                row = (
                    db.query(ChatLog.id)
                    .filter(
                        ChatLog.restaurant_id == _parse_uuid(restaurant_id),
                        ChatLog.customer_id == _parse_uuid(customer_id),
                        ChatLog.whatsapp_msg_id == external_id,
                    )
                    .first()
                )
                return Result.success(row is not None)
            except SQLAlchemyError as e:
                logger.error(f"has_external_message failed: {e}")
                return Result.failure(str(e), ErrorCode.DB_ERROR)

    def last_customer_message_at(
        self, restaurant_id: str, customer_id: str, text: str
    ) -> Result[Optional[datetime]]:
        with self._session_factory() as db:
            try:
                row = (
                    db.query(ChatLog.timestamp)
                    .filter(
                        ChatLog.restaurant_id == _parse_uuid(restaurant_id),
                        ChatLog.customer_id == _parse_uuid(customer_id),
                        ChatLog.sender == "customer",
                        ChatLog.message == text,
                    )
                    .order_by(ChatLog.timestamp.desc(), ChatLog.id.desc())
                    .first()
                )
                return Result.success(as_utc(row[0]) if row else None)
            except SQLAlchemyError as e:
                logger.error(f"last_customer_message_at failed: {e}")
                return Result.failure(str(e), ErrorCode.DB_ERROR)

    def append_chat_message(
        self,
        restaurant_id: str,
        customer_id: str,
        sender: str,
        message: str,
        *,
        timestamp: datetime,
        media_ref: Optional[str] = None,
        whatsapp_msg_id: Optional[str] = None,
    ) -> Result[int]:
        with self._session_factory() as db:
            try:
                entry = ChatLog(
                    restaurant_id=_parse_uuid(restaurant_id),
                    customer_id=_parse_uuid(customer_id),
                    sender=sender,
                    message=message,
                    media_ref=media_ref,
                    whatsapp_msg_id=whatsapp_msg_id,
                    timestamp=as_utc(timestamp),
                )
                db.add(entry)
                db.commit()
                return Result.success(entry.id)
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"append_chat_message failed: {e}")
                return Result.failure(str(e), ErrorCode.DB_ERROR)

    def list_tables(self, restaurant_id: str) -> Result[list[TableInfo]]:
        with self._session_factory() as db:
            try:
                tables = (
                    db.query(DiningTable)
                    .filter(DiningTable.restaurant_id == _parse_uuid(restaurant_id))
                    .order_by(DiningTable.table_number)
                    .all()
                )
                return Result.success([_to_table_info(table) for table in tables])
            except SQLAlchemyError as e:
                logger.error(f"list_tables failed: {e}")
                return Result.failure(str(e), ErrorCode.DB_ERROR)

    def list_confirmed_slots(self, restaurant_id: str) -> Result[list[ReservedSlot]]:
        with self._session_factory() as db:
            try:
                rows = (
                    db.query(Booking.table_id, Booking.start_date_time, Booking.end_date_time)
                    .filter(
                        Booking.restaurant_id == _parse_uuid(restaurant_id),
                        Booking.status == BOOKING_CONFIRMED,
                    )
                    .order_by(Booking.start_date_time)
                    .all()
                )
                return Result.success(
                    [
                        ReservedSlot(
                            table_id=str(table_id) if table_id else None,
                            start=as_utc(start),
                            end=as_utc(end),
                        )
                        for table_id, start, end in rows
                    ]
                )
            except SQLAlchemyError as e:
                logger.error(f"list_confirmed_slots failed: {e}")
                return Result.failure(str(e), ErrorCode.DB_ERROR)

    def list_chat_history(self, restaurant_id: str, customer_id: str, limit: int) -> Result[list[ChatEntry]]:
        with self._session_factory() as db:
            try:
                rows = (
                    db.query(ChatLog)
                    .filter(
                        ChatLog.restaurant_id == _parse_uuid(restaurant_id),
                        ChatLog.customer_id == _parse_uuid(customer_id),
                    )
                    .order_by(ChatLog.timestamp.desc(), ChatLog.id.desc())
                    .limit(limit)
                    .all()
                )
                entries = [
                    ChatEntry(
                        message_id=row.id,
                        sender=row.sender,
                        message=row.message,
                        timestamp=as_utc(row.timestamp),
                    )
                    for row in reversed(rows)
                ]
                return Result.success(entries)
            except SQLAlchemyError as e:
                logger.error(f"list_chat_history failed: {e}")
                return Result.failure(str(e), ErrorCode.DB_ERROR)

    def list_customer_bookings(self, restaurant_id: str, customer_id: str) -> Result[list[BookingRecord]]:
        with self._session_factory() as db:
            try:
                bookings = (
                    db.query(Booking)
                    .filter(
                        Booking.restaurant_id == _parse_uuid(restaurant_id),
                        Booking.customer_id == _parse_uuid(customer_id),
                    )
                    .order_by(Booking.start_date_time)
                    .all()
                )
                return Result.success([_to_booking_record(booking) for booking in bookings])
            except SQLAlchemyError as e:
                logger.error(f"list_customer_bookings failed: {e}")
                return Result.failure(str(e), ErrorCode.DB_ERROR)

    def get_booking(self, restaurant_id: str, booking_id: str) -> Result[BookingRecord]:
        booking_uuid = _parse_uuid(booking_id)
        if booking_uuid is None:
            return Result.failure(f"Invalid booking id: {booking_id!r}", ErrorCode.NOT_FOUND)
        with self._session_factory() as db:
            try:
                booking = (
                    db.query(Booking)
                    .filter(Booking.id == booking_uuid, Booking.restaurant_id == _parse_uuid(restaurant_id))
                    .first()
                )
                if not booking:
                    return Result.failure(f"Booking {booking_id} not found", ErrorCode.NOT_FOUND)
                return Result.success(_to_booking_record(booking))
            except SQLAlchemyError as e:
                logger.error(f"get_booking failed: {e}")
                return Result.failure(str(e), ErrorCode.DB_ERROR)

    def _lock_table(self, db: Session, restaurant_uuid: uuid.UUID, table_id: str) -> Optional[DiningTable]:
        table_uuid = _parse_uuid(table_id)
        if table_uuid is None:
            return None
        return (
            db.query(DiningTable)
            .filter(DiningTable.id == table_uuid, DiningTable.restaurant_id == restaurant_uuid)
            .with_for_update()
            .first()
        )

    def _has_overlap(
        self,
        db: Session,
        table: DiningTable,
        start: datetime,
        end: datetime,
        exclude_booking: Optional[uuid.UUID] = None,
    ) -> bool:
        query = db.query(Booking.id).filter(
            Booking.table_id == table.id,
            Booking.status == BOOKING_CONFIRMED,
            Booking.start_date_time < as_utc(end),
            Booking.end_date_time > as_utc(start),
        )
        if exclude_booking is not None:
            query = query.filter(Booking.id != exclude_booking)
        return query.first() is not None

    def _check_slot(
        self,
        db: Session,
        restaurant_uuid: uuid.UUID,
        draft: BookingDraft,
        exclude_booking: Optional[uuid.UUID] = None,
    ) -> Result[DiningTable]:
        table = self._lock_table(db, restaurant_uuid, draft.table_id)
        if not table:
            return Result.failure(f"Table {draft.table_id} not found", ErrorCode.NOT_FOUND)
        if table.capacity < draft.pax:
            return Result.failure(
                f"Table {table.table_number} seats {table.capacity}, party is {draft.pax}", ErrorCode.CAPACITY
            )
        if self._has_overlap(db, table, draft.start, draft.end, exclude_booking):
            return Result.failure(f"Table {table.table_number} is already booked for that time", ErrorCode.OVERLAP)
        return Result.success(table)

    def create_booking_if_free(self, restaurant_id: str, draft: BookingDraft) -> Result[str]:
        restaurant_uuid = _parse_uuid(restaurant_id)
        customer_uuid = _parse_uuid(draft.customer_id)
        if restaurant_uuid is None or customer_uuid is None:
            return Result.failure("Invalid restaurant or customer id", ErrorCode.NOT_FOUND)
        with self._session_factory() as db:
            try:
                slot = self._check_slot(db, restaurant_uuid, draft)
                if not slot.ok:
                    db.rollback()
                    return Result.failure(slot.error, slot.error_code)

                now = datetime.now(timezone.utc)
                booking = Booking(
                    id=uuid.uuid4(),
                    restaurant_id=restaurant_uuid,
                    customer_id=customer_uuid,
                    table_id=slot.value.id,
                    title=draft.title,
                    pax=draft.pax,
                    status=BOOKING_CONFIRMED,
                    notes=draft.notes,
                    type=draft.type,
                    start_date_time=as_utc(draft.start),
                    end_date_time=as_utc(draft.end),
                    created_at=now,
                    updated_at=now,
                )
                db.add(booking)
                db.commit()
                logger.info(
                    "Booking created",
                    extra={"context": {"booking_id": str(booking.id), "table_id": draft.table_id, "pax": draft.pax}},
                )
                return Result.success(str(booking.id))
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"create_booking_if_free failed: {e}")
                return Result.failure(str(e), ErrorCode.DB_ERROR)

    def update_booking_if_free(self, restaurant_id: str, booking_id: str, draft: BookingDraft) -> Result[str]:
        restaurant_uuid = _parse_uuid(restaurant_id)
        booking_uuid = _parse_uuid(booking_id)
        if restaurant_uuid is None or booking_uuid is None:
            return Result.failure(f"Invalid booking id: {booking_id!r}", ErrorCode.NOT_FOUND)
        with self._session_factory() as db:
            try:
                booking = (
                    db.query(Booking)
                    .filter(Booking.id == booking_uuid, Booking.restaurant_id == restaurant_uuid)
                    .with_for_update()
                    .first()
                )
                if not booking:
                    return Result.failure(f"Booking {booking_id} not found", ErrorCode.NOT_FOUND)

                slot = self._check_slot(db, restaurant_uuid, draft, exclude_booking=booking_uuid)
                if not slot.ok:
                    db.rollback()
                    return Result.failure(slot.error, slot.error_code)

                booking.table_id = slot.value.id
                booking.pax = draft.pax
                booking.title = draft.title
                booking.notes = draft.notes
                booking.start_date_time = as_utc(draft.start)
                booking.end_date_time = as_utc(draft.end)
                booking.status = BOOKING_CONFIRMED
                booking.updated_at = datetime.now(timezone.utc)
                db.commit()
                logger.info("Booking updated", extra={"context": {"booking_id": booking_id}})
                return Result.success(booking_id)
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"update_booking_if_free failed: {e}")
                return Result.failure(str(e), ErrorCode.DB_ERROR)

    def cancel_booking(self, restaurant_id: str, booking_id: str) -> Result[bool]:
        booking_uuid = _parse_uuid(booking_id)
        if booking_uuid is None:
            return Result.failure(f"Invalid booking id: {booking_id!r}", ErrorCode.NOT_FOUND)
        with self._session_factory() as db:
            try:
                booking = (
                    db.query(Booking)
                    .filter(Booking.id == booking_uuid, Booking.restaurant_id == _parse_uuid(restaurant_id))
                    .with_for_update()
                    .first()
                )
                if not booking:
                    return Result.failure(f"Booking {booking_id} not found", ErrorCode.NOT_FOUND)
                if booking.status == BOOKING_CANCELLED:
                    return Result.success(False)
                booking.status = BOOKING_CANCELLED
                booking.updated_at = datetime.now(timezone.utc)
                db.commit()
                logger.info("Booking cancelled", extra={"context": {"booking_id": booking_id}})
                return Result.success(True)
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"cancel_booking failed: {e}")
                return Result.failure(str(e), ErrorCode.DB_ERROR)

    def list_staff_tokens(self, restaurant_id: str) -> Result[list[str]]:
        with self._session_factory() as db:
            try:
                rows = (
                    db.query(StaffDevice.push_token)
                    .filter(
                        StaffDevice.restaurant_id == _parse_uuid(restaurant_id),
                        StaffDevice.is_active.is_(True),
                    )
                    .all()
                )
                return Result.success([row[0] for row in rows if row[0]])
            except SQLAlchemyError as e:
                logger.error(f"list_staff_tokens failed: {e}")
                return Result.failure(str(e), ErrorCode.DB_ERROR)
