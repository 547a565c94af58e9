from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Index, Integer, Text, Uuid
from sqlalchemy.orm import relationship

from app.database import Base


class ChatLog(Base):
    __tablename__ = "chat_logs"
    __table_args__ = (
        Index("ix_chat_logs_customer_msg_id", "restaurant_id", "customer_id", "whatsapp_msg_id"),
        Index("ix_chat_logs_customer_timestamp", "restaurant_id", "customer_id", "timestamp"),
    )

    # Autoincrement id doubles as insertion order for timestamp ties.
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    restaurant_id = Column(Uuid, nullable=False)
    customer_id = Column(Uuid, ForeignKey("customers.id"), nullable=False)
    sender = Column(Text, nullable=False)  # customer, staff
    message = Column(Text, nullable=False)
    media_ref = Column(Text)
    whatsapp_msg_id = Column(Text)
    timestamp = Column(DateTime(timezone=True), nullable=False)

    customer = relationship("Customer", back_populates="chat_logs")
