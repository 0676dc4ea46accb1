import uuid

from sqlalchemy import Column, DateTime, Index, Text, Uuid

from flowdesk.database import Base, JSONType, utcnow


class ScheduledMessage(Base):
    __tablename__ = "scheduled_messages"
    __table_args__ = (Index("ix_scheduled_messages_due", "status", "send_at"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Text, nullable=False, index=True)
    schedule_name = Column(Text, nullable=False)
    recipient = Column(Text, nullable=False)
    kind = Column(Text, nullable=False, default="message")
    payload_json = Column(JSONType, nullable=False)
    send_at = Column(DateTime(timezone=True), nullable=False)
    status = Column(Text, nullable=False, default="pending")  # pending, sent, queued, failed
    transport_message_id = Column(Text)
    error = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    processed_at = Column(DateTime(timezone=True))
