"""
Tests for the entitlement projection.
"""

from datetime import timedelta

from subledger.models.api import Store, SubscriptionStatus
from subledger.services.entitlements import EntitlementWriter, compute_entitlement
from factories import NOW, create_subscription, create_user


class TestComputeEntitlement:
    """Tests for compute_entitlement."""

    def test_no_subscriptions(self):
        """Test that a user without subscriptions is not entitled."""
        user = create_user()

        projection = compute_entitlement(user.id, [], NOW)

        assert projection.is_subscribed is False
        assert projection.status is None
        assert projection.expires_at is None
        assert projection.active_subscription_id is None

    def test_active_subscription_entitles(self):
        """Test that an active subscription with a future end entitles."""
        user = create_user()
        sub = create_subscription(user_id=user.id)

        projection = compute_entitlement(user.id, [sub], NOW)

        assert projection.is_subscribed is True
        assert projection.status == SubscriptionStatus.ACTIVE
        assert projection.expires_at == sub.current_period_end
        assert projection.source == Store.MOBILE
        assert projection.plan == "pro_monthly"
        assert projection.active_subscription_id == sub.id

    def test_latest_ending_subscription_wins(self):
        """Test that with several entitling subscriptions the one ending last is reported."""
        user = create_user()
        mobile = create_subscription(user_id=user.id, current_period_end=NOW + timedelta(days=5))
        web = create_subscription(
            user_id=user.id,
            store=Store.WEB,
            correlation_key="web-ref-1",
            current_period_end=NOW + timedelta(days=20),
        )

        projection = compute_entitlement(user.id, [mobile, web], NOW)

        assert projection.active_subscription_id == web.id
        assert projection.source == Store.WEB

    def test_grace_end_counts(self):
        """Test that a grace subscription entitles until its grace end."""
        user = create_user()
        sub = create_subscription(
            user_id=user.id,
            status=SubscriptionStatus.GRACE,
            current_period_end=NOW - timedelta(days=1),
            grace_period_end=NOW + timedelta(days=3),
        )

        projection = compute_entitlement(user.id, [sub], NOW)

        assert projection.is_subscribed is True
        assert projection.expires_at == NOW + timedelta(days=3)

    def test_entitled_status_with_past_end_does_not_entitle(self):
        """Test that an unswept active row past its end grants nothing."""
        user = create_user()
        sub = create_subscription(user_id=user.id, current_period_end=NOW - timedelta(minutes=1))

        projection = compute_entitlement(user.id, [sub], NOW)

        assert projection.is_subscribed is False

    def test_not_entitled_reports_latest_updated(self):
        """Test that without entitlement the most recently updated status is reported."""
        user = create_user()
        older = create_subscription(
            user_id=user.id,
            status=SubscriptionStatus.EXPIRED,
            updated_at=NOW - timedelta(days=10),
        )
        newer = create_subscription(
            user_id=user.id,
            status=SubscriptionStatus.REFUNDED,
            updated_at=NOW - timedelta(days=1),
        )

        projection = compute_entitlement(user.id, [older, newer], NOW)

        assert projection.is_subscribed is False
        assert projection.status == SubscriptionStatus.REFUNDED
        assert projection.expires_at is None
        assert projection.active_subscription_id is None


class TestEntitlementWriter:
    """Tests for EntitlementWriter."""

    def test_write_updates_projection_columns(self):
        """Test that the writer stages the projection on the user row."""
        user = create_user()
        sub = create_subscription(user_id=user.id)

        EntitlementWriter().write(user, [sub], NOW, last_payment_at=NOW)

        assert user.is_subscribed is True
        assert user.subscription_status == SubscriptionStatus.ACTIVE
        assert user.subscription_expires_at == sub.current_period_end
        assert user.subscription_source == Store.MOBILE
        assert user.active_subscription_id == sub.id
        assert user.last_payment_at == NOW
        assert user.entitlement_updated_at == NOW

    def test_write_clears_projection(self):
        """Test that losing entitlement clears expiry and active subscription."""
        user = create_user(is_subscribed=True)
        sub = create_subscription(user_id=user.id, status=SubscriptionStatus.EXPIRED)

        projection = EntitlementWriter().write(user, [sub], NOW)

        assert projection.is_subscribed is False
        assert user.is_subscribed is False
        assert user.subscription_expires_at is None
        assert user.active_subscription_id is None
        assert user.last_payment_at is None
