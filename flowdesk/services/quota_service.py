"""Message allowance per tenant subscription.

Usage only grows, and only through `consume`, once per unit actually
transmitted. Callers check `remaining` against the full unit count of a
multi-part send before transmitting anything.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from flowdesk.logging_config import get_logger
from flowdesk.models import Plan, Subscription
from flowdesk.services.errors import NoActiveSubscriptionError, QuotaExhaustedError

logger = get_logger("quota_service")


@dataclass
class QuotaInfo:
    subscription: Subscription
    limit: int
    used: int

    @property
    def remaining(self) -> int:
        return max(self.limit - self.used, 0)


def get_active_subscription(db: Session, tenant_id: str, now: Optional[datetime] = None) -> Optional[Subscription]:
    """Subscription whose validity window covers `now`.

    Canceled subscriptions stay usable until their end date.
    """
    now = now or datetime.now(timezone.utc)
    return (
        db.query(Subscription)
        .filter(
            Subscription.tenant_id == tenant_id,
            Subscription.status.in_(["active", "canceled"]),
            Subscription.start_at <= now,
            Subscription.end_at > now,
        )
        .order_by(Subscription.end_at.desc())
        .first()
    )


def check_quota(db: Session, tenant_id: str) -> QuotaInfo:
    subscription = get_active_subscription(db, tenant_id)
    if subscription is None:
        raise NoActiveSubscriptionError(tenant_id)

    db.refresh(subscription)
    plan = db.query(Plan).filter(Plan.id == subscription.plan_id).first()
    limit = plan.message_limit if plan else 0
    return QuotaInfo(subscription=subscription, limit=limit, used=subscription.messages_used or 0)


def ensure_quota(db: Session, tenant_id: str, units: int) -> QuotaInfo:
    """Raise unless `units` more messages fit in the allowance."""
    info = check_quota(db, tenant_id)
    if info.remaining < units:
        logger.info(
            "Quota check rejected send",
            extra={"context": {"tenant_id": tenant_id, "remaining": info.remaining, "requested": units}},
        )
        raise QuotaExhaustedError(tenant_id, info.remaining, units)
    return info


def consume(db: Session, subscription_id, units: int = 1) -> None:
    """Atomic increment of messages_used. Flushes, caller commits."""
    if units <= 0:
        raise ValueError("units must be positive")
    db.execute(
        update(Subscription)
        .where(Subscription.id == subscription_id)
        .values(messages_used=Subscription.messages_used + units)
        .execution_options(synchronize_session=False)
    )
    db.flush()
