"""
Tests for the scheduled email dispatch engine.

Each test commits its data first; the engine then works through its own
sessions, the way the scheduler-triggered endpoint runs it.
"""

from datetime import timedelta
from unittest.mock import patch

import pytest

from synergy_crm.database import get_db
from synergy_crm.dispatch import DispatchEngine, MISSING_ADDRESS_REASON
from synergy_crm.errors import StorageError, TransportError
from synergy_crm.models import EmailStatus, FollowUpEmail, utcnow


@pytest.fixture
def engine_under_test(transport, session_factory):
    return DispatchEngine(transport=transport, session_factory=session_factory)


@pytest.fixture
def due(seed_email):
    """Seed a scheduled email that became due five minutes ago."""
    def _due(contact_id, **fields):
        return seed_email(
            contact_id,
            status=EmailStatus.SCHEDULED,
            scheduled_date=utcnow() - timedelta(minutes=5),
            **fields,
        )
    return _due


def load(session_factory, email_id):
    with get_db(session_factory) as db:
        email = db.get(FollowUpEmail, email_id)
        db.expunge(email)
        return email


class TestDelivery:

    def test_due_email_is_sent(self, engine_under_test, transport, session_factory, seed_contact, due):
        contact_id = seed_contact()
        email_id = due(contact_id)

        report = engine_under_test.run_once()

        transport.send.assert_called_once_with(
            to="grace@example.com",
            subject="Following up",
            body="Lovely chatting at the conference.",
            sender_name="Ada Lovelace",
            reply_to="ada@example.com",
        )
        email = load(session_factory, email_id)
        assert email.status == EmailStatus.SENT
        assert email.sent_at is not None
        assert email.error_message is None
        assert report.sent == 1
        assert report.to_dict()["results"][0]["email"] == "grace@example.com"

    def test_future_and_draft_emails_are_left_alone(
        self, engine_under_test, transport, session_factory, seed_contact, seed_email
    ):
        contact_id = seed_contact()
        future_id = seed_email(
            contact_id,
            status=EmailStatus.SCHEDULED,
            scheduled_date=utcnow() + timedelta(days=1),
        )
        draft_id = seed_email(contact_id, scheduled_date=utcnow() - timedelta(days=1))

        report = engine_under_test.run_once()

        assert report.processed == 0
        transport.send.assert_not_called()
        assert load(session_factory, future_id).status == EmailStatus.SCHEDULED
        assert load(session_factory, draft_id).status == EmailStatus.DRAFT

    def test_transport_failure_marks_failed(
        self, engine_under_test, transport, session_factory, seed_contact, due
    ):
        transport.send.side_effect = TransportError("Failed to send email to grace@example.com: 550")
        email_id = due(seed_contact())

        report = engine_under_test.run_once()

        email = load(session_factory, email_id)
        assert email.status == EmailStatus.FAILED
        assert "550" in email.error_message
        assert email.sent_at is None
        assert report.failed == 1

    def test_unexpected_error_marks_failed(
        self, engine_under_test, transport, session_factory, seed_contact, due
    ):
        transport.send.side_effect = RuntimeError("socket closed")
        email_id = due(seed_contact())

        engine_under_test.run_once()

        email = load(session_factory, email_id)
        assert email.status == EmailStatus.FAILED
        assert email.error_message == "socket closed"

    def test_contact_without_email_fails_without_sending(
        self, engine_under_test, transport, session_factory, seed_contact, due
    ):
        email_id = due(seed_contact(email=None))

        report = engine_under_test.run_once()

        transport.send.assert_not_called()
        email = load(session_factory, email_id)
        assert email.status == EmailStatus.FAILED
        assert email.error_message == MISSING_ADDRESS_REASON
        assert report.results[0].reason == MISSING_ADDRESS_REASON


class TestAtMostOnce:

    def test_second_run_sends_nothing(self, engine_under_test, transport, seed_contact, due):
        due(seed_contact())

        engine_under_test.run_once()
        second = engine_under_test.run_once()

        assert transport.send.call_count == 1
        assert second.processed == 0

    def test_failed_email_is_not_retried(self, engine_under_test, transport, seed_contact, due):
        transport.send.side_effect = TransportError("boom")
        due(seed_contact())

        engine_under_test.run_once()
        engine_under_test.run_once()

        assert transport.send.call_count == 1

    def test_claimed_email_is_skipped(
        self, engine_under_test, transport, session_factory, seed_contact, due
    ):
        email_id = due(seed_contact(), claim_token="other-run", claimed_at=utcnow())

        assert engine_under_test.find_due(utcnow()) == []
        result = engine_under_test._process(email_id, utcnow())

        assert result.status == "skipped"
        transport.send.assert_not_called()
        assert load(session_factory, email_id).status == EmailStatus.SCHEDULED

    def test_failure_before_send_releases_claim(
        self, engine_under_test, transport, session_factory, seed_contact, due
    ):
        email_id = due(seed_contact())

        with patch.object(DispatchEngine, "_load", side_effect=StorageError("db blip")):
            first = engine_under_test.run_once()

        assert first.results[0].status == "skipped"
        transport.send.assert_not_called()
        email = load(session_factory, email_id)
        assert email.status == EmailStatus.SCHEDULED
        assert email.claim_token is None

        second = engine_under_test.run_once()

        assert second.sent == 1
        transport.send.assert_called_once()
        assert load(session_factory, email_id).status == EmailStatus.SENT

    def test_lost_race_between_scan_and_claim(
        self, engine_under_test, transport, session_factory, seed_contact, due
    ):
        email_id = due(seed_contact())
        now = utcnow()
        found = engine_under_test.find_due(now)

        # Another run delivers the email before this one claims it
        DispatchEngine(transport=transport, session_factory=session_factory).run_once(now)
        result = engine_under_test._process(found[0], now)

        assert result.status == "skipped"
        assert transport.send.call_count == 1
        assert load(session_factory, email_id).status == EmailStatus.SENT


class TestBatch:

    def test_one_failure_does_not_block_others(
        self, engine_under_test, transport, session_factory, seed_contact, due
    ):
        def send(to, **kwargs):
            if to == "bad@example.com":
                raise TransportError("Mailbox unavailable")

        transport.send.side_effect = send
        bad_id = due(seed_contact(name="Bad", email="bad@example.com"))
        good_id = due(seed_contact(name="Good", email="good@example.com"))

        report = engine_under_test.run_once()

        assert report.sent == 1
        assert report.failed == 1
        assert load(session_factory, bad_id).status == EmailStatus.FAILED
        assert load(session_factory, good_id).status == EmailStatus.SENT

    def test_batch_limit(self, transport, session_factory, seed_contact, due):
        contact_id = seed_contact()
        for _ in range(3):
            due(contact_id)

        report = DispatchEngine(
            transport=transport, session_factory=session_factory, batch_limit=2
        ).run_once()

        assert report.sent == 2
        assert transport.send.call_count == 2
