import uuid

from sqlalchemy import Column, DateTime, Text, UniqueConstraint, Uuid

from flowdesk.database import Base, JSONType, utcnow


class PollVote(Base):
    __tablename__ = "poll_votes"
    __table_args__ = (UniqueConstraint("tenant_id", "poll_message_id", "voter", name="uq_poll_votes_voter"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Text, nullable=False)
    chat_id = Column(Text)
    poll_message_id = Column(Text, nullable=False)
    correlation_id = Column(Text)
    voter = Column(Text, nullable=False)
    option = Column(Text)  # selected labels, comma joined
    selected = Column(JSONType, nullable=False, default=list)
    order_number = Column(Text)
    source = Column(Text, nullable=False, default="vote_update")
    voted_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
