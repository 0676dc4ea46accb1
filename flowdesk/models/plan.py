import uuid

from sqlalchemy import Boolean, Column, DateTime, Integer, Numeric, Text, Uuid
from sqlalchemy.orm import relationship

from flowdesk.database import Base, utcnow


class Plan(Base):
    __tablename__ = "plans"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    code = Column(Text, nullable=False, unique=True)
    name = Column(Text, nullable=False)
    months = Column(Integer, nullable=False, default=1)
    price = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(Text, nullable=False, default="USD")
    message_limit = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    subscriptions = relationship("Subscription", back_populates="plan")
