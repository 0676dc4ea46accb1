import uuid

from sqlalchemy import Column, DateTime, Text, Uuid

from flowdesk.database import Base, JSONType, utcnow


class Message(Base):
    __tablename__ = "messages"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Text, nullable=False, index=True)
    chat_id = Column(Text, nullable=False)
    transport_message_id = Column(Text, unique=True)
    direction = Column(Text, nullable=False)  # inbound, outbound
    sender = Column(Text)
    kind = Column(Text, nullable=False, default="text")
    body = Column(Text)
    raw = Column(JSONType)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
