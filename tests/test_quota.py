from datetime import datetime, timedelta, timezone

import pytest

from conftest import seed_tenant
from flowdesk.models import Subscription
from flowdesk.services import quota_service
from flowdesk.services.errors import NoActiveSubscriptionError, QuotaExhaustedError


class TestCheckQuota:
    def test_remaining_is_limit_minus_used(self, db_session):
        seed_tenant(db_session, message_limit=10, messages_used=3)

        info = quota_service.check_quota(db_session, "t1")

        assert info.limit == 10
        assert info.used == 3
        assert info.remaining == 7

    def test_no_subscription_raises(self, db_session):
        with pytest.raises(NoActiveSubscriptionError):
            quota_service.check_quota(db_session, "unknown")

    def test_expired_subscription_is_not_active(self, db_session):
        _, subscription = seed_tenant(db_session)
        now = datetime.now(timezone.utc)
        subscription.start_at = now - timedelta(days=40)
        subscription.end_at = now - timedelta(days=10)
        db_session.commit()

        with pytest.raises(NoActiveSubscriptionError):
            quota_service.check_quota(db_session, "t1")

    def test_canceled_subscription_valid_until_end(self, db_session):
        seed_tenant(db_session, status="canceled")

        assert quota_service.check_quota(db_session, "t1").remaining == 100

    def test_remaining_never_negative(self, db_session):
        seed_tenant(db_session, message_limit=5, messages_used=9)

        assert quota_service.check_quota(db_session, "t1").remaining == 0


class TestEnsureQuota:
    def test_poll_with_intro_needs_two_units(self, db_session):
        seed_tenant(db_session, message_limit=10, messages_used=9)

        with pytest.raises(QuotaExhaustedError) as exc:
            quota_service.ensure_quota(db_session, "t1", 2)

        assert exc.value.remaining == 1
        assert exc.value.requested == 2

    def test_exact_fit_passes(self, db_session):
        seed_tenant(db_session, message_limit=10, messages_used=8)

        assert quota_service.ensure_quota(db_session, "t1", 2).remaining == 2


class TestConsume:
    def test_consume_increments_used(self, db_session):
        _, subscription = seed_tenant(db_session, message_limit=10)

        quota_service.consume(db_session, subscription.id, 1)
        quota_service.consume(db_session, subscription.id, 2)
        db_session.commit()

        db_session.expire_all()
        assert db_session.get(Subscription, subscription.id).messages_used == 3

    def test_consume_rejects_non_positive(self, db_session):
        _, subscription = seed_tenant(db_session)

        with pytest.raises(ValueError):
            quota_service.consume(db_session, subscription.id, 0)
