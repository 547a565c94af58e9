from app.models.booking import Booking
from app.models.chat_log import ChatLog
from app.models.customer import Customer
from app.models.dining_table import DiningTable
from app.models.staff_device import StaffDevice

__all__ = [
    "Customer",
    "DiningTable",
    "Booking",
    "ChatLog",
    "StaffDevice",
]
