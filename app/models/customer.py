import uuid

from sqlalchemy import Column, DateTime, Text, Uuid
from sqlalchemy.orm import relationship

from app.database import Base


class Customer(Base):
    __tablename__ = "customers"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(Text)
    phone = Column(Text, nullable=False, unique=True)
    email = Column(Text, default="N/A")
    created_at = Column(DateTime(timezone=True), nullable=False)

    bookings = relationship("Booking", back_populates="customer")
    chat_logs = relationship("ChatLog", back_populates="customer")
