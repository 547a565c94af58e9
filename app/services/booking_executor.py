"""Apply gated booking decisions to the store."""

from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from app.config import Settings, settings
from app.logging_config import get_logger
from app.schemas.decision import CancelBooking, CreateBooking, MutationOutcome, UpdateBooking
from app.services.booking_store import BOOKING_CANCELLED, BookingDraft, BookingStore, as_utc, call_store
from app.services.result import ErrorCode, Result

logger = get_logger("booking_executor")

Mutation = Union[CreateBooking, UpdateBooking, CancelBooking]


class BookingExecutor:
    def __init__(
        self,
        store: BookingStore,
        restaurant_id: str,
        *,
        max_reservation_hours: float,
        service_type: str,
        read_timeout_seconds: Optional[float] = None,
    ):
        self.store = store
        self.restaurant_id = restaurant_id
        self.max_duration = timedelta(hours=max_reservation_hours)
        self.service_type = service_type
        self.read_timeout_seconds = read_timeout_seconds

    @classmethod
    def from_settings(cls, store: BookingStore, config: Settings = settings) -> "BookingExecutor":
        return cls(
            store,
            config.restaurant_id,
            max_reservation_hours=config.max_reservation_time_hr,
            service_type=config.service_type,
            read_timeout_seconds=config.store_timeout_seconds,
        )

    def _title(self, pax: int) -> str:
        return f"{self.service_type} Reservation for {pax} Pax"

    def validate_window(self, start: datetime, end: datetime, pax: int, now: datetime) -> Optional[str]:
        """Return a reason when the window or party size is unacceptable."""
        start, end, now = as_utc(start), as_utc(end), as_utc(now)
        if pax <= 0:
            return "party size must be positive"
        if end <= start:
            return "end must be after start"
        if end - start > self.max_duration:
            return f"reservation longer than {self.max_duration}"
        if start < now:
            return "start is in the past"
        return None

    async def execute(
        self, decision: Mutation, customer_id: str, now: Optional[datetime] = None
    ) -> Result[MutationOutcome]:
        """Run one mutation. Every failure is reported as mutation_failed with the cause in the message."""
        now = now or datetime.now(timezone.utc)
        if isinstance(decision, CreateBooking):
            result = await self._create(decision, now)
        elif isinstance(decision, UpdateBooking):
            result = await self._update(decision, customer_id, now)
        elif isinstance(decision, CancelBooking):
            result = await self._cancel(decision, customer_id)
        else:
            result = Result.failure(f"Not a mutation: {type(decision).__name__}", ErrorCode.MUTATION_FAILED)

        if result.ok:
            logger.info(
                f"Booking {result.value.action}",
                extra={"context": {"booking_id": result.value.booking_id, "customer_id": customer_id}},
            )
            return result

        logger.warning(
            f"Booking mutation rejected: {result.error}",
            extra={"context": {"kind": getattr(decision, "kind", None), "cause": result.error_code}},
        )
        return Result.failure(f"{result.error_code}: {result.error}", ErrorCode.MUTATION_FAILED)

    async def _create(self, decision: CreateBooking, now: datetime) -> Result[MutationOutcome]:
        reason = self.validate_window(decision.start, decision.end, decision.pax, now)
        if reason:
            return Result.failure(reason, ErrorCode.INVALID_WINDOW)

        draft = BookingDraft(
            customer_id=decision.customer_id,
            table_id=decision.table_id,
            title=decision.title,
            pax=decision.pax,
            type=decision.type,
            start=decision.start,
            end=decision.end,
            notes=decision.notes,
        )
        # No client-side timeout; the database bounds the write (statement_timeout, lock_timeout).
        written = await call_store(self.store.create_booking_if_free, self.restaurant_id, draft)
        if not written.ok:
            return Result.failure(written.error, written.error_code)
        return Result.success(MutationOutcome(action="created", booking_id=written.value))

    async def _load_owned(self, booking_id: str, customer_id: str):
        found = await call_store(
            self.store.get_booking, self.restaurant_id, booking_id, timeout=self.read_timeout_seconds
        )
        if not found.ok:
            return found
        if found.value.customer_id != customer_id:
            return Result.failure(f"Booking {booking_id} belongs to another customer", ErrorCode.FORBIDDEN)
        return found

    async def _update(self, decision: UpdateBooking, customer_id: str, now: datetime) -> Result[MutationOutcome]:
        found = await self._load_owned(decision.booking_id, customer_id)
        if not found.ok:
            return Result.failure(found.error, found.error_code)
        current = found.value

        start = decision.start or current.start
        if decision.end is not None:
            end = decision.end
        elif decision.start is not None:
            # New start without an end keeps the booked duration.
            end = decision.start + (current.end - current.start)
        else:
            end = current.end
        pax = decision.pax or current.pax
        table_id = decision.table_id or current.table_id
        if not table_id:
            return Result.failure("Booking has no table", ErrorCode.NOT_FOUND)

        reason = self.validate_window(start, end, pax, now)
        if reason:
            return Result.failure(reason, ErrorCode.INVALID_WINDOW)

        draft = BookingDraft(
            customer_id=customer_id,
            table_id=table_id,
            title=self._title(pax),
            pax=pax,
            type=current.type,
            start=start,
            end=end,
            notes=decision.notes if decision.notes is not None else current.notes,
        )
        written = await call_store(
            self.store.update_booking_if_free, self.restaurant_id, decision.booking_id, draft
        )
        if not written.ok:
            return Result.failure(written.error, written.error_code)
        return Result.success(MutationOutcome(action="updated", booking_id=decision.booking_id))

    async def _cancel(self, decision: CancelBooking, customer_id: str) -> Result[MutationOutcome]:
        found = await self._load_owned(decision.booking_id, customer_id)
        if not found.ok:
            return Result.failure(found.error, found.error_code)
        if found.value.status == BOOKING_CANCELLED:
            return Result.success(MutationOutcome(action="already_cancelled", booking_id=decision.booking_id))

        written = await call_store(self.store.cancel_booking, self.restaurant_id, decision.booking_id)
        if not written.ok:
            return Result.failure(written.error, written.error_code)
        action = "cancelled" if written.value else "already_cancelled"
        return Result.success(MutationOutcome(action=action, booking_id=decision.booking_id))
