import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Text, Uuid
from sqlalchemy.orm import relationship

from flowdesk.database import Base, utcnow


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Text, nullable=False, index=True)
    plan_id = Column(Uuid, ForeignKey("plans.id"), nullable=False)
    status = Column(Text, nullable=False, default="active")  # active, canceled
    start_at = Column(DateTime(timezone=True), nullable=False)
    end_at = Column(DateTime(timezone=True), nullable=False)
    messages_used = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    plan = relationship("Plan", back_populates="subscriptions")
