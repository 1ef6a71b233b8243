"""Subscription projection tests"""
from datetime import datetime, timezone

import pytest

from app.db.stores import SubscriptionStore, UserStore
from app.models.subscription import Subscription
from app.services.customer_service import CustomerResolver
from app.services.results import ErrorKind, ResultStatus
from app.services.subscription_service import (
    SubscriptionProjector, invoice_subscription_id, period_bounds
)

PERIOD_START = 1767225600  # 2026-01-01T00:00:00Z
PERIOD_END = 1769904000    # 2026-02-01T00:00:00Z


@pytest.fixture
def projector(db_session, provider):
    return SubscriptionProjector(
        provider, SubscriptionStore(db_session), CustomerResolver(provider, UserStore(db_session))
    )


def _subscription(status="active", customer="cus_test123", metadata=None, **extra):
    data = {
        "id": "sub_test123",
        "object": "subscription",
        "customer": customer,
        "status": status,
        "cancel_at_period_end": False,
        "current_period_start": PERIOD_START,
        "current_period_end": PERIOD_END,
        "metadata": metadata or {"planId": "plan_pro", "planName": "Pro"},
    }
    data.update(extra)
    return data


def _naive_utc(ts):
    # SQLite drops tzinfo on the way back out
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


@pytest.mark.critical
class TestSubscriptionLifecycle:
    """customer.subscription.* events"""

    def test_created_projects_subscription(self, projector, db_session, test_user, make_event):
        result = projector.handle_subscription_event(
            make_event("customer.subscription.created", _subscription())
        )

        assert result.status == ResultStatus.SUCCESS
        record = db_session.query(Subscription).filter(Subscription.user_id == test_user.id).one()
        assert record.status == "active"
        assert record.stripe_subscription_id == "sub_test123"
        assert record.stripe_customer_id == "cus_test123"
        assert record.plan_id == "plan_pro"
        assert record.plan_name == "Pro"
        assert record.cancel_at_period_end is False
        assert record.current_period_start.replace(tzinfo=None) == _naive_utc(PERIOD_START)
        assert record.current_period_end.replace(tzinfo=None) == _naive_utc(PERIOD_END)

    def test_update_overwrites_with_latest_state(self, projector, db_session, test_user, make_event):
        """After an update the projection matches the subscription in that event"""
        projector.handle_subscription_event(make_event("customer.subscription.created", _subscription()))
        projector.handle_subscription_event(make_event(
            "customer.subscription.updated",
            _subscription(status="past_due", cancel_at_period_end=True)
        ))

        record = db_session.query(Subscription).one()
        assert record.status == "past_due"
        assert record.cancel_at_period_end is True

    def test_status_is_stored_verbatim(self, projector, db_session, test_user, make_event):
        projector.handle_subscription_event(
            make_event("customer.subscription.updated", _subscription(status="incomplete_expired"))
        )

        assert db_session.query(Subscription).one().status == "incomplete_expired"

    def test_deleted_marks_canceled(self, projector, db_session, test_user, make_event):
        projector.handle_subscription_event(make_event("customer.subscription.created", _subscription()))
        projector.handle_subscription_event(make_event(
            "customer.subscription.deleted", _subscription(status=None, canceled_at=PERIOD_END)
        ))

        record = db_session.query(Subscription).one()
        assert record.status == "canceled"
        assert record.canceled_at.replace(tzinfo=None) == _naive_utc(PERIOD_END)

    def test_resolves_user_from_customer_metadata(self, projector, db_session, provider, make_event):
        provider.retrieve_customer.return_value = {"id": "cus_other", "metadata": {"userId": "user_from_customer"}}

        result = projector.handle_subscription_event(
            make_event("customer.subscription.created", _subscription(customer="cus_other"))
        )

        assert result.status == ResultStatus.SUCCESS
        assert db_session.query(Subscription).one().user_id == "user_from_customer"

    def test_resolves_user_from_subscription_metadata(self, projector, db_session, make_event):
        result = projector.handle_subscription_event(make_event(
            "customer.subscription.created",
            _subscription(customer="cus_unknown", metadata={"userId": "user_from_sub"})
        ))

        assert result.status == ResultStatus.SUCCESS
        record = db_session.query(Subscription).one()
        assert (record.user_id, record.status) == ("user_from_sub", "active")

    def test_unresolved_user_is_dropped(self, projector, db_session, make_event):
        result = projector.handle_subscription_event(
            make_event("customer.subscription.created", _subscription(customer="cus_unknown"))
        )

        assert result.status == ResultStatus.DROPPED
        assert result.kind == ErrorKind.MISSING_DATA
        assert db_session.query(Subscription).count() == 0


@pytest.mark.critical
class TestInvoiceEvents:
    """invoice.payment_* events"""

    def _invoice(self, **extra):
        data = {"id": "in_test123", "object": "invoice", "customer": "cus_test123", "subscription": "sub_test123"}
        data.update(extra)
        return data

    def test_payment_succeeded_sets_active(self, projector, db_session, test_user, make_event):
        projector.handle_subscription_event(make_event("customer.subscription.created", _subscription(status="incomplete")))

        result = projector.handle_invoice_event(make_event("invoice.payment_succeeded", self._invoice()))

        assert result.status == ResultStatus.SUCCESS
        record = db_session.query(Subscription).one()
        assert record.status == "active"
        assert record.last_payment_at is not None
        assert record.last_payment_failed_at is None

    def test_invoice_without_projection_creates_nothing(self, projector, db_session, test_user, make_event):
        result = projector.handle_invoice_event(make_event("invoice.payment_succeeded", self._invoice()))

        assert result.status == ResultStatus.IGNORED
        assert db_session.query(Subscription).count() == 0

    def test_payment_failed_sets_past_due(self, projector, db_session, test_user, make_event):
        projector.handle_subscription_event(make_event("customer.subscription.created", _subscription()))

        projector.handle_invoice_event(make_event("invoice.payment_failed", self._invoice()))

        record = db_session.query(Subscription).one()
        assert record.status == "past_due"
        assert record.last_payment_failed_at is not None
        assert record.plan_id == "plan_pro"

    def test_invoice_without_subscription_is_ignored(self, projector, db_session, test_user, make_event):
        result = projector.handle_invoice_event(
            make_event("invoice.payment_succeeded", self._invoice(subscription=None))
        )

        assert result.status == ResultStatus.IGNORED
        assert db_session.query(Subscription).count() == 0

    def test_user_from_retrieved_subscription(self, projector, db_session, provider, make_event):
        provider.retrieve_subscription.return_value = {"id": "sub_test123", "metadata": {"userId": "user_from_sub"}}
        db_session.add(Subscription(user_id="user_from_sub", status="past_due", stripe_subscription_id="sub_test123"))
        db_session.commit()

        result = projector.handle_invoice_event(
            make_event("invoice.payment_succeeded", self._invoice(customer="cus_unknown"), account="acct_seller")
        )

        assert result.status == ResultStatus.SUCCESS
        provider.retrieve_subscription.assert_called_once_with("sub_test123", stripe_account="acct_seller")
        assert db_session.query(Subscription).one().user_id == "user_from_sub"


class TestStripeShapes:
    """Reading fields across Stripe API versions"""

    def test_period_from_items_when_top_level_missing(self):
        subscription = {
            "id": "sub_1",
            "items": {"data": [{"current_period_start": PERIOD_START, "current_period_end": PERIOD_END}]},
        }

        start, end = period_bounds(subscription)

        assert start == datetime.fromtimestamp(PERIOD_START, tz=timezone.utc)
        assert end == datetime.fromtimestamp(PERIOD_END, tz=timezone.utc)

    def test_no_period_anywhere(self):
        assert period_bounds({"id": "sub_1"}) == (None, None)

    def test_invoice_subscription_from_parent(self):
        invoice = {"id": "in_1", "parent": {"subscription_details": {"subscription": "sub_parent"}}}
        assert invoice_subscription_id(invoice) == "sub_parent"

    def test_invoice_subscription_expanded(self):
        assert invoice_subscription_id({"subscription": {"id": "sub_expanded"}}) == "sub_expanded"
