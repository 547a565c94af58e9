from app.services.booking_store import (
    BookingDraft,
    BookingStore,
    SqlBookingStore,
    call_store,
)
from app.services.result import (
    ErrorCode,
    Result,
)
