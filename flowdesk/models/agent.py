import uuid

from sqlalchemy import Boolean, Column, DateTime, Text, Uuid
from sqlalchemy.orm import relationship

from flowdesk.database import Base, utcnow


class Agent(Base):
    __tablename__ = "agents"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Text, nullable=False, index=True)
    name = Column(Text, nullable=False)
    phone = Column(Text)
    status = Column(Text, nullable=False, default="active")  # active, inactive
    online = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    chats = relationship("Chat", back_populates="agent")
