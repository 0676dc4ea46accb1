"""One-time passcodes delivered over the tenant's WhatsApp session.

Only an HMAC-SHA256 digest of the code is stored, one record per
(tenant, phone). Sending a new code replaces the previous one.
"""

import hashlib
import hmac
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.orm import Session

from flowdesk.config import settings
from flowdesk.logging_config import get_logger
from flowdesk.models import OtpCode
from flowdesk.services import quota_service
from flowdesk.services.assignment_service import tenant_text
from flowdesk.services.errors import OtpError, SessionNotReadyError
from flowdesk.services.outbound_service import KIND_MESSAGE, OutboundPayload
from flowdesk.services.result import Result

logger = get_logger("otp_service")


def _ensure_timezone(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def normalize_phone(phone: str) -> str:
    return re.sub(r"\D", "", phone or "")


def generate_code() -> str:
    return str(100000 + secrets.randbelow(900000))


def hash_code(tenant_id: str, phone: str, code: str) -> str:
    message = f"{tenant_id}:{phone}:{code}".encode("utf-8")
    return hmac.new(settings.otp_secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def apply_template(template: Optional[str], code: str, expiry_minutes: int) -> str:
    text = template or settings.otp_default_template
    return text.replace("{{otp_code}}", code).replace("{{expiry_minutes}}", str(expiry_minutes))


def store_code(db: Session, tenant_id: str, phone: str, code: str) -> OtpCode:
    expires_at = datetime.now(timezone.utc) + timedelta(minutes=settings.otp_expiry_minutes)
    record = db.query(OtpCode).filter(OtpCode.tenant_id == tenant_id, OtpCode.phone == phone).first()
    if record is None:
        record = OtpCode(tenant_id=tenant_id, phone=phone)
        db.add(record)
    record.code_hash = hash_code(tenant_id, phone, code)
    record.expires_at = expires_at
    record.attempts = 0
    record.verified = False
    record.verified_at = None
    db.commit()
    return record


async def send_otp(db: Session, registry, outbound, tenant_id: str, phone: str, template: Optional[str] = None) -> dict:
    """Generate, store and deliver a code. Never queued: waits briefly for the session instead."""
    phone = normalize_phone(phone)
    if not phone:
        raise OtpError("Phone number is required", "invalid_phone")

    quota_service.ensure_quota(db, tenant_id, 1)

    if not await registry.wait_until_ready(tenant_id, settings.otp_ready_wait_seconds):
        raise SessionNotReadyError(tenant_id)

    code = generate_code()
    record = store_code(db, tenant_id, phone, code)
    template = template or tenant_text(db, tenant_id, "otp_template", None)
    text = apply_template(template, code, settings.otp_expiry_minutes)

    outcome = await outbound.send_now(db, tenant_id, phone, OutboundPayload(kind=KIND_MESSAGE, message=text))
    logger.info("OTP sent", extra={"context": {"tenant_id": tenant_id, "phone": phone}})
    return {
        "phone": phone,
        "expires_at": _ensure_timezone(record.expires_at),
        "message_id": outcome.transport_message_id,
    }


def verify_otp(db: Session, tenant_id: str, phone: str, code: str) -> Result[str]:
    phone = normalize_phone(phone)
    record = db.query(OtpCode).filter(OtpCode.tenant_id == tenant_id, OtpCode.phone == phone).first()

    if record is None:
        return Result.failure("No OTP generated for this phone", "not_found")
    if record.verified:
        return Result.success("Already verified")
    if _ensure_timezone(record.expires_at) < datetime.now(timezone.utc):
        return Result.failure("OTP expired", "expired")
    if record.attempts >= settings.otp_max_attempts:
        return Result.failure("Too many attempts", "too_many_attempts")

    if not hmac.compare_digest(record.code_hash, hash_code(tenant_id, phone, (code or "").strip())):
        record.attempts += 1
        db.commit()
        return Result.failure("Invalid OTP", "invalid")

    record.verified = True
    record.verified_at = datetime.now(timezone.utc)
    db.commit()
    return Result.success("OTP verified successfully")
