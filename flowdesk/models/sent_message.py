import uuid

from sqlalchemy import Boolean, Column, DateTime, Text, Uuid

from flowdesk.database import Base, JSONType, utcnow


class SentMessage(Base):
    __tablename__ = "sent_messages"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Text, nullable=False, index=True)
    recipient = Column(Text, nullable=False)
    kind = Column(Text, nullable=False)  # message, media, poll
    transport_message_id = Column(Text, unique=True)
    short_id = Column(Text, index=True)
    payload = Column(JSONType, nullable=False, default=dict)
    correlation_id = Column(Text)
    answered = Column(Boolean, nullable=False, default=False)
    answer = Column(JSONType)  # {labels, raw, order_number}
    answered_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
