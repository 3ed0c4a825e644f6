"""
Tests for the append-only event log and history replay.
"""

from datetime import timedelta
from unittest.mock import MagicMock
from uuid import uuid4

from subledger.db.models import SubscriptionEvent
from subledger.models.api import EventKind, EventSource, Store, SubscriptionStatus
from subledger.services.event_log import EventLog, reconstruct_history
from subledger.services.records import event_to_domain
from factories import NOW, create_event_row

S = SubscriptionStatus


def history_rows(subscription_id, *steps, applied=None):
    """Audit rows one minute apart for (kind, previous, new) steps."""
    rows = []
    for index, (kind, previous, new) in enumerate(steps):
        row = create_event_row(
            subscription_id, kind, previous, new, NOW + timedelta(minutes=index)
        )
        if applied is not None and index in applied:
            row.applied = False
        rows.append(event_to_domain(row))
    return rows


class TestReconstructHistory:
    """Tests for reconstruct_history."""

    def test_empty_log(self):
        """Test that an empty log replays to no status."""
        history = reconstruct_history([])

        assert history.transitions == ()
        assert history.final_status is None
        assert history.consistent is True

    def test_unbroken_chain(self):
        """Test that a clean purchase, renew, cancel chain is consistent."""
        sub_id = uuid4()
        events = history_rows(
            sub_id,
            (EventKind.PURCHASED, None, S.ACTIVE),
            (EventKind.RENEWED, S.ACTIVE, S.ACTIVE),
            (EventKind.CANCELED, S.ACTIVE, S.PENDING_CANCELLATION),
        )

        history = reconstruct_history(events)

        assert len(history.transitions) == 3
        assert history.final_status == S.PENDING_CANCELLATION
        assert history.matches(S.PENDING_CANCELLATION) is True
        assert history.matches(S.ACTIVE) is False

    def test_out_of_order_input_is_sorted(self):
        """Test that replay follows insertion time, not input order."""
        sub_id = uuid4()
        events = history_rows(
            sub_id,
            (EventKind.PURCHASED, None, S.ACTIVE),
            (EventKind.EXPIRED, S.ACTIVE, S.EXPIRED),
        )

        history = reconstruct_history(list(reversed(events)))

        assert history.final_status == S.EXPIRED
        assert history.consistent is True

    def test_break_in_chain_is_flagged(self):
        """Test that a status written outside the log breaks consistency."""
        sub_id = uuid4()
        events = history_rows(
            sub_id,
            (EventKind.PURCHASED, None, S.ACTIVE),
            (EventKind.REVOKED, S.GRACE, S.REFUNDED),
        )

        history = reconstruct_history(events)

        assert history.transitions[1].consistent is False
        assert history.consistent is False
        assert history.matches(S.REFUNDED) is False

    def test_unapplied_events_are_skipped(self):
        """Test that stale or failed rows do not take part in the replay."""
        sub_id = uuid4()
        events = history_rows(
            sub_id,
            (EventKind.PURCHASED, None, S.ACTIVE),
            (EventKind.CANCELED, S.ACTIVE, S.ACTIVE),
            applied={1},
        )

        history = reconstruct_history(events)

        assert len(history.transitions) == 1
        assert history.final_status == S.ACTIVE

    def test_system_events_are_skipped(self):
        """Test that worker tallies without a subscription are ignored."""
        events = history_rows(None, (EventKind.RECONCILED, None, None))

        history = reconstruct_history(events)

        assert history.transitions == ()


class TestEventLog:
    """Tests for EventLog."""

    def test_append_stages_row_without_commit(self, db_session):
        """Test that append adds a row and leaves the commit to the caller."""
        sub_id = uuid4()
        payment_id = uuid4()

        row = EventLog(db_session).append(
            event_kind=EventKind.RENEWED,
            source=EventSource.WEBHOOK,
            event_time=NOW,
            subscription_id=sub_id,
            store=Store.MOBILE,
            previous_status=S.ACTIVE,
            new_status=S.ACTIVE,
            raw_notification={"at": NOW, "store": Store.MOBILE},
            amount_minor=999,
            currency="USD",
            payment_record_id=payment_id,
        )

        db_session.add.assert_called_once_with(row)
        db_session.commit.assert_not_called()
        assert row.has_financial_impact is True
        assert row.raw_notification == {"at": NOW.isoformat(), "store": "mobile"}

    def test_append_without_payment(self, db_session):
        """Test that rows without a payment record carry no financial impact."""
        row = EventLog(db_session).append(
            event_kind=EventKind.CANCELED,
            source=EventSource.API,
            event_time=NOW,
        )

        assert row.has_financial_impact is False
        assert row.raw_notification == {}
        assert row.applied is True

    async def test_notification_exists(self, db_session):
        """Test duplicate lookup by store notification id."""
        existing = MagicMock(spec=SubscriptionEvent)
        db_session.execute.return_value.scalar_one_or_none.return_value = existing

        log = EventLog(db_session)

        assert await log.notification_exists("msg-1") is True
        assert await log.notification_exists(None) is False

    async def test_notification_absent(self, db_session):
        """Test that an unseen notification id is not a duplicate."""
        assert await EventLog(db_session).notification_exists("msg-2") is False
