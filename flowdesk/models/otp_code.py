import uuid

from sqlalchemy import Boolean, Column, DateTime, Integer, Text, UniqueConstraint, Uuid

from flowdesk.database import Base, utcnow


class OtpCode(Base):
    __tablename__ = "otp_codes"
    __table_args__ = (UniqueConstraint("tenant_id", "phone", name="uq_otp_codes_tenant_phone"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Text, nullable=False)
    phone = Column(Text, nullable=False)
    code_hash = Column(Text, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    verified = Column(Boolean, nullable=False, default=False)
    verified_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
