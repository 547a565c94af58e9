import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, Text, Uuid
from sqlalchemy.orm import relationship

from app.database import Base


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint("end_date_time > start_date_time", name="ck_bookings_window"),
        Index("ix_bookings_table_window", "table_id", "start_date_time", "end_date_time"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    restaurant_id = Column(Uuid, nullable=False, index=True)
    customer_id = Column(Uuid, ForeignKey("customers.id"), nullable=False)
    table_id = Column(Uuid, ForeignKey("tables.id"))
    title = Column(Text, nullable=False)
    pax = Column(Integer, nullable=False)
    status = Column(Text, nullable=False)  # pending, confirmed, cancelled
    notes = Column(Text)
    type = Column(Text, nullable=False)
    start_date_time = Column(DateTime(timezone=True), nullable=False)
    end_date_time = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    customer = relationship("Customer", back_populates="bookings")
    table = relationship("DiningTable")
