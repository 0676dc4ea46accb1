import uuid

from sqlalchemy import Column, DateTime, Index, Integer, Text, Uuid

from flowdesk.database import Base, JSONType, utcnow


class QueuedMessage(Base):
    __tablename__ = "queued_messages"
    __table_args__ = (Index("ix_queued_messages_tenant_status", "tenant_id", "status", "created_at"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Text, nullable=False)
    recipient = Column(Text, nullable=False)
    kind = Column(Text, nullable=False)  # message, media, poll
    payload_json = Column(JSONType, nullable=False)
    status = Column(Text, nullable=False, default="pending")  # pending, sent, failed
    consumed_count = Column(Integer, nullable=False, default=0)
    transport_message_id = Column(Text)
    error = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    processed_at = Column(DateTime(timezone=True))
