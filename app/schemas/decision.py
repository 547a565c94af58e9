from datetime import datetime
from enum import Enum
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class DecisionAction(str, Enum):
    REQUEST_BOOKING_INFO = "request_booking_info"
    REQUEST_UPDATE_BOOKING = "request_update_booking"
    REQUEST_CANCEL_BOOKING = "request_cancel_booking"
    CONFIRM_BOOKING = "confirm_booking"
    CONFIRM_UPDATE_BOOKING = "confirm_update_booking"
    CONFIRM_CANCEL_BOOKING = "confirm_cancel_booking"
    MODIFY = "modify"
    CANCEL = "cancel"
    REJECT = "reject"
    CONFIRMED = "confirmed"


MUTATING_ACTIONS = {
    DecisionAction.CONFIRM_BOOKING,
    DecisionAction.CONFIRM_UPDATE_BOOKING,
    DecisionAction.CONFIRM_CANCEL_BOOKING,
}


class DecisionPayload(BaseModel):
    """Raw model output. Shape only; business completeness is checked by gating."""

    model_config = ConfigDict(extra="forbid")

    action: DecisionAction
    message: str
    name: Optional[str]
    booking_id: Optional[str]
    start_date: Optional[str]
    start_time: Optional[str]
    end_date: Optional[str]
    end_time: Optional[str]
    num_guests: Optional[int]
    special_requests: Optional[str]
    booking_title: Optional[str]
    table_id: Optional[str]


def _nullable(kind: str) -> dict:
    return {"type": [kind, "null"]}


DECISION_JSON_SCHEMA = {
    "type": "object",
    "properties": {
        "action": {"type": "string", "enum": [action.value for action in DecisionAction]},
        "message": {"type": "string"},
        "name": _nullable("string"),
        "booking_id": _nullable("string"),
        "start_date": _nullable("string"),
        "start_time": _nullable("string"),
        "end_date": _nullable("string"),
        "end_time": _nullable("string"),
        "num_guests": _nullable("integer"),
        "special_requests": _nullable("string"),
        "booking_title": _nullable("string"),
        "table_id": _nullable("string"),
    },
    "required": [
        "action",
        "message",
        "name",
        "booking_id",
        "start_date",
        "start_time",
        "end_date",
        "end_time",
        "num_guests",
        "special_requests",
        "booking_title",
        "table_id",
    ],
    "additionalProperties": False,
}


class ReplyOnly(BaseModel):
    kind: Literal["reply"] = "reply"
    action: DecisionAction
    reply: str


class CreateBooking(BaseModel):
    kind: Literal["create"] = "create"
    action: DecisionAction = DecisionAction.CONFIRM_BOOKING
    reply: str
    customer_id: str = Field(min_length=1)
    table_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    pax: int = Field(gt=0)
    start: datetime
    end: datetime
    type: str = Field(min_length=1)
    notes: Optional[str] = None


class UpdateBooking(BaseModel):
    kind: Literal["update"] = "update"
    action: DecisionAction = DecisionAction.CONFIRM_UPDATE_BOOKING
    reply: str
    booking_id: str = Field(min_length=1)
    table_id: Optional[str] = None
    pax: Optional[int] = Field(default=None, gt=0)
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    notes: Optional[str] = None


class CancelBooking(BaseModel):
    kind: Literal["cancel"] = "cancel"
    action: DecisionAction = DecisionAction.CONFIRM_CANCEL_BOOKING
    reply: str
    booking_id: str = Field(min_length=1)


Decision = Union[ReplyOnly, CreateBooking, UpdateBooking, CancelBooking]


class MutationOutcome(BaseModel):
    action: Literal["created", "updated", "cancelled", "already_cancelled"]
    booking_id: str
