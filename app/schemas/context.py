from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class CustomerRecord(BaseModel):
    customer_id: str
    phone: str
    name: Optional[str] = None


class TableInfo(BaseModel):
    table_id: str
    table_number: str
    capacity: int
    location: Optional[str] = None
    movable: bool = False
    status: str = "available"

    @property
    def description(self) -> str:
        return f"{self.table_number} (At {self.location or 'main floor'} for {self.capacity} pax)"


class ReservedSlot(BaseModel):
    table_id: Optional[str] = None
    start: datetime
    end: datetime


class ChatEntry(BaseModel):
    message_id: int
    sender: str  # customer, staff
    message: str
    timestamp: datetime


class BookingRecord(BaseModel):
    booking_id: str
    customer_id: str
    table_id: Optional[str] = None
    table_number: Optional[str] = None
    title: str
    pax: int
    type: str
    status: str
    notes: Optional[str] = None
    start: datetime
    end: datetime


class DecisionContext(BaseModel):
    """Bounded facts handed to the decision step. Empty slices mean unknown, not none."""

    tables: list[TableInfo] = Field(default_factory=list)
    reserved_slots: list[ReservedSlot] = Field(default_factory=list)
    chat_history: list[ChatEntry] = Field(default_factory=list)
    customer_bookings: list[BookingRecord] = Field(default_factory=list)
    degraded: list[str] = Field(default_factory=list)
