"""Tests for FollowUpEmailService."""

from datetime import datetime

import pytest

from synergy_crm.errors import (
    InvalidReferenceError, NotFoundError, TransportError, ValidationError
)
from synergy_crm.models import EmailStatus, FollowUpEmail
from synergy_crm.services.contact_service import ContactService
from synergy_crm.services.email_service import FollowUpEmailService, parse_datetime


@pytest.fixture
def service(db, user):
    return FollowUpEmailService(db, user)


@pytest.fixture
def contact(db, user):
    return ContactService(db, user).create(name="Grace Hopper", email="grace@example.com")


class TestParseDatetime:

    def test_zulu_suffix(self):
        assert parse_datetime("2026-11-02T09:00:00Z") == datetime(2026, 11, 2, 9, 0)

    def test_offset_is_converted_to_utc(self):
        assert parse_datetime("2026-11-02T11:00:00+02:00") == datetime(2026, 11, 2, 9, 0)

    def test_empty(self):
        assert parse_datetime(None) is None
        assert parse_datetime("") is None

    def test_invalid(self):
        with pytest.raises(ValidationError, match="Invalid date"):
            parse_datetime("next tuesday")


class TestCreate:

    def test_create_draft(self, service, contact):
        email = service.create(contact.id, "Following up", "Lovely to meet you.")

        assert email.status == EmailStatus.DRAFT
        assert email.scheduled_date is None
        assert email.to_dict()["contactId"] == contact.id

    def test_create_scheduled(self, service, contact):
        email = service.create(
            contact.id, "Following up", "Hello", "scheduled", "2026-11-02T09:00:00Z"
        )

        assert email.status == EmailStatus.SCHEDULED
        assert email.scheduled_date == datetime(2026, 11, 2, 9, 0)

    def test_unknown_contact(self, service):
        with pytest.raises(InvalidReferenceError):
            service.create("no-such-contact", "Following up", "Hello")

    def test_missing_contact_id(self, service):
        with pytest.raises(ValidationError, match="contactId"):
            service.create(None, "Following up", "Hello")

    def test_unknown_status_is_rejected(self, service, contact):
        with pytest.raises(ValidationError, match="Invalid email status"):
            service.create(contact.id, "Following up", "Hello", status="queued")

    def test_cannot_create_sent(self, service, contact):
        with pytest.raises(ValidationError, match="cannot be created"):
            service.create(contact.id, "Following up", "Hello", status="sent")

    def test_scheduled_needs_date(self, service, contact):
        with pytest.raises(ValidationError, match="scheduled date"):
            service.create(contact.id, "Following up", "Hello", status="scheduled")

    def test_subject_and_body_required(self, service, contact):
        with pytest.raises(ValidationError, match="subject"):
            service.create(contact.id, "  ", "Hello")
        with pytest.raises(ValidationError, match="body"):
            service.create(contact.id, "Hi", "")


class TestUpdate:

    def test_schedule_a_draft(self, service, contact):
        email = service.create(contact.id, "Following up", "Hello")

        updated = service.schedule(email.id, "2026-11-02T09:00:00Z")

        assert updated.status == EmailStatus.SCHEDULED
        assert updated.scheduled_date == datetime(2026, 11, 2, 9, 0)

    def test_scheduled_cannot_return_to_draft(self, service, contact):
        email = service.create(contact.id, "Hi", "Hello", "scheduled", "2026-11-02T09:00:00Z")

        with pytest.raises(ValidationError, match="from scheduled to draft"):
            service.update(email.id, status="draft")

    def test_user_cannot_mark_sent(self, service, contact):
        email = service.create(contact.id, "Hi", "Hello")

        with pytest.raises(ValidationError, match="from draft to sent"):
            service.update(email.id, status=EmailStatus.SENT)

    def test_sent_email_is_not_editable(self, db, service, contact):
        email = service.create(contact.id, "Hi", "Hello")
        email.status = EmailStatus.SENT
        db.flush()

        with pytest.raises(ValidationError, match="sent email cannot be edited"):
            service.update(email.id, subject="Changed")

    def test_claimed_email_is_not_editable(self, db, service, contact):
        email = service.create(contact.id, "Hi", "Hello", "scheduled", "2026-11-02T09:00:00Z")
        email.claim_token = "some-run"
        db.flush()

        with pytest.raises(ValidationError, match="being delivered"):
            service.update(email.id, body="Changed")

    def test_edit_text(self, service, contact):
        email = service.create(contact.id, "Hi", "Hello")

        updated = service.update(email.id, subject="Hi again", body="Hello again")

        assert updated.subject == "Hi again"
        assert updated.body == "Hello again"
        assert updated.status == EmailStatus.DRAFT

    def test_update_missing(self, service):
        with pytest.raises(NotFoundError):
            service.update("missing-id", subject="x")


class TestSendNow:

    def test_send_records_sent_email(self, db, service, contact, transport):
        email = service.send_now(contact.id, "Following up", "Hello", transport)

        transport.send.assert_called_once_with(
            to="grace@example.com",
            subject="Following up",
            body="Hello",
            sender_name="Ada Lovelace",
            reply_to="ada@example.com",
        )
        assert email.status == EmailStatus.SENT
        assert email.sent_at is not None
        assert db.query(FollowUpEmail).count() == 1

    def test_transport_failure_leaves_no_record(self, db, service, contact, transport):
        transport.send.side_effect = TransportError("Connection refused")

        with pytest.raises(TransportError):
            service.send_now(contact.id, "Following up", "Hello", transport)

        assert db.query(FollowUpEmail).count() == 0

    def test_contact_without_email(self, db, user, service, transport):
        contact = ContactService(db, user).create(name="No Address")

        with pytest.raises(ValidationError, match="no email address"):
            service.send_now(contact.id, "Following up", "Hello", transport)

        transport.send.assert_not_called()


class TestQueries:

    def test_list_by_status_and_stats(self, db, service, contact):
        service.create(contact.id, "Draft", "Hello")
        service.create(contact.id, "Later", "Hello", "scheduled", "2026-12-01T09:00:00Z")
        service.create(contact.id, "Sooner", "Hello", "scheduled", "2026-11-01T09:00:00Z")
        failed = service.create(contact.id, "Broken", "Hello")
        failed.status = EmailStatus.FAILED
        db.flush()

        scheduled = service.list_all(status=EmailStatus.SCHEDULED)
        stats = service.get_stats()

        assert [e.subject for e in scheduled] == ["Sooner", "Later"]
        assert stats["draft"] == 1
        assert stats["scheduled"] == 2
        assert stats["failed"] == 1
        assert stats["sent"] == 0
        assert stats["success_rate"] == 0

    def test_delete(self, db, service, contact):
        email = service.create(contact.id, "Hi", "Hello")

        service.delete(email.id)

        assert service.get_by_id(email.id) is None
