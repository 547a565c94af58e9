import uuid

from sqlalchemy import Boolean, Column, Integer, Text, Uuid

from app.database import Base


class DiningTable(Base):
    __tablename__ = "tables"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    restaurant_id = Column(Uuid, nullable=False, index=True)
    table_number = Column(Text, nullable=False)
    capacity = Column(Integer, nullable=False)
    location = Column(Text)  # indoor, patio, bar, ...
    movable = Column(Boolean, nullable=False, default=False)
    status = Column(Text, nullable=False, default="available")
