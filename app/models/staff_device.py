import uuid

from sqlalchemy import Boolean, Column, Text, Uuid

from app.database import Base


class StaffDevice(Base):
    __tablename__ = "staff_devices"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    restaurant_id = Column(Uuid, nullable=False, index=True)
    push_token = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
