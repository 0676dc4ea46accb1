import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship

from flowdesk.database import Base, utcnow


class Chat(Base):
    __tablename__ = "chats"
    __table_args__ = (UniqueConstraint("tenant_id", "chat_id", name="uq_chats_tenant_chat"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Text, nullable=False)
    chat_id = Column(Text, nullable=False)
    name = Column(Text)
    is_group = Column(Boolean, nullable=False, default=False)
    status = Column(Text, nullable=False, default="pending")  # pending, assigned, closed
    agent_id = Column(Uuid, ForeignKey("agents.id"))
    last_activity_at = Column(DateTime(timezone=True))
    assigned_at = Column(DateTime(timezone=True))
    closed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    agent = relationship("Agent", back_populates="chats")
