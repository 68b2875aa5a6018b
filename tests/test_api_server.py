"""Tests for the Flask API server."""

import io
import json
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.exc import SQLAlchemyError

import api_server
from synergy_crm.config import config
from synergy_crm.errors import TransportError
from synergy_crm.models import utcnow
from synergy_crm.services import ContactService
from synergy_crm.storage import CardImageStorage


@pytest.fixture
def app(session_factory, transport, generator, tmp_path):
    flask_app = api_server.app
    flask_app.config.update(
        TESTING=True,
        SESSION_FACTORY=session_factory,
        MAIL_TRANSPORT=transport,
        TEXT_GENERATOR=generator,
        CARD_STORAGE=CardImageStorage(root=tmp_path),
    )
    yield flask_app
    flask_app.config.update(
        SESSION_FACTORY=api_server.SessionLocal,
        MAIL_TRANSPORT=None,
        TEXT_GENERATOR=None,
        CARD_STORAGE=None,
    )


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_headers(client):
    response = client.post("/api/auth/register", json={
        "email": "ada@example.com",
        "password": "correct horse",
        "fullName": "Ada Lovelace",
    })
    assert response.status_code == 201
    return {"Authorization": f"Bearer {response.get_json()['token']}"}


@pytest.fixture
def contact_id(client, auth_headers):
    response = client.post("/api/contacts", headers=auth_headers, json={
        "name": "Grace Hopper",
        "email": "grace@example.com",
        "company": "US Navy",
    })
    assert response.status_code == 201
    return response.get_json()["contact"]["id"]


def test_health_check(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.get_json()["status"] == "ok"


class TestAuth:

    def test_login(self, client, auth_headers):
        response = client.post("/api/auth/login", json={
            "email": "ADA@example.com",
            "password": "correct horse",
        })

        assert response.status_code == 200
        assert response.get_json()["user"]["fullName"] == "Ada Lovelace"

    def test_wrong_password(self, client, auth_headers):
        response = client.post("/api/auth/login", json={
            "email": "ada@example.com",
            "password": "wrong",
        })

        assert response.status_code == 401

    def test_duplicate_registration(self, client, auth_headers):
        response = client.post("/api/auth/register", json={
            "email": "ada@example.com",
            "password": "another password",
            "fullName": "Ada",
        })

        assert response.status_code == 400

    def test_requires_token(self, client):
        assert client.get("/api/contacts").status_code == 401
        assert client.get(
            "/api/contacts", headers={"Authorization": "Bearer nonsense"}
        ).status_code == 401

    def test_update_profile(self, client, auth_headers):
        response = client.put("/api/auth/profile", headers=auth_headers, json={
            "senderEmail": "ada@analytical.engine.org",
        })

        assert response.status_code == 200
        me = client.get("/api/auth/me", headers=auth_headers).get_json()
        assert me["senderEmail"] == "ada@analytical.engine.org"


class TestContacts:

    def test_list_contacts(self, client, auth_headers, contact_id):
        data = client.get("/api/contacts", headers=auth_headers).get_json()

        assert data["total"] == 1
        assert data["contacts"][0]["id"] == contact_id

    def test_create_requires_name(self, client, auth_headers):
        response = client.post("/api/contacts", headers=auth_headers, json={"email": "x@example.com"})

        assert response.status_code == 400
        assert response.get_json() == {"success": False, "error": "Contact name is required"}

    def test_database_error_returns_json(self, client, auth_headers):
        with patch.object(ContactService, "create", side_effect=SQLAlchemyError("disk I/O error")):
            response = client.post("/api/contacts", headers=auth_headers, json={"name": "Grace"})

        assert response.status_code == 500
        assert response.get_json() == {"success": False, "error": "Database operation failed"}
        assert client.get("/api/contacts", headers=auth_headers).get_json()["contacts"] == []

    def test_update_contact(self, client, auth_headers, contact_id):
        response = client.put(
            f"/api/contacts/{contact_id}", headers=auth_headers, json={"position": "Admiral"}
        )

        assert response.get_json()["contact"]["position"] == "Admiral"

    def test_missing_contact(self, client, auth_headers):
        response = client.get("/api/contacts/missing-id", headers=auth_headers)

        assert response.status_code == 404

    def test_delete_contact_with_emails(self, client, auth_headers, contact_id):
        client.post("/api/emails", headers=auth_headers, json={
            "contactId": contact_id, "subject": "Hi", "body": "Hello",
        })

        response = client.delete(f"/api/contacts/{contact_id}", headers=auth_headers)

        assert response.get_json() == {"success": True, "emailsDeleted": 1}
        emails = client.get("/api/emails", headers=auth_headers).get_json()
        assert emails["emails"] == []

    def test_scan_business_card(self, client, auth_headers, generator):
        generator.describe_image.return_value = json.dumps({
            "full_name": "Grace Hopper", "email": "grace@navy.mil",
        })

        response = client.post(
            "/api/contacts/scan",
            headers=auth_headers,
            data={"image": (io.BytesIO(b"\x89PNG fake"), "card.png", "image/png")},
            content_type="multipart/form-data",
        )

        assert response.status_code == 201
        data = response.get_json()
        assert data["contact"]["name"] == "Grace Hopper"
        assert data["contact"]["cardImageUrl"].startswith("cards://")

    def test_scan_without_image(self, client, auth_headers):
        response = client.post("/api/contacts/scan", headers=auth_headers)

        assert response.status_code == 400


class TestEmails:

    def test_generate(self, client, auth_headers, contact_id, generator):
        response = client.post("/api/generate", headers=auth_headers, json={
            "contactId": contact_id, "notes": "Talked about compilers",
        })

        assert response.get_json()["email"] == generator.complete.return_value
        notes = client.get(f"/api/contacts/{contact_id}/notes", headers=auth_headers).get_json()
        assert notes["notes"] == "Talked about compilers"

    def test_generation_failure(self, client, auth_headers, contact_id, generator):
        from synergy_crm.errors import GenerationError
        generator.complete.side_effect = GenerationError("OpenAI API error: timeout")

        response = client.post("/api/generate", headers=auth_headers, json={
            "contactId": contact_id, "notes": "Talked about compilers",
        })

        assert response.status_code == 502
        notes = client.get(f"/api/contacts/{contact_id}/notes", headers=auth_headers).get_json()
        assert notes["notes"] == ""

    def test_unknown_status_becomes_draft(self, client, auth_headers, contact_id):
        response = client.post("/api/emails", headers=auth_headers, json={
            "contactId": contact_id, "subject": "Hi", "body": "Hello", "status": "queued",
        })

        assert response.status_code == 201
        assert response.get_json()["email"]["status"] == "draft"

    def test_email_for_missing_contact(self, client, auth_headers):
        response = client.post("/api/emails", headers=auth_headers, json={
            "contactId": "missing-id", "subject": "Hi", "body": "Hello",
        })

        assert response.status_code == 409

    def test_schedule_requires_date(self, client, auth_headers, contact_id):
        response = client.post("/api/emails/schedule", headers=auth_headers, json={
            "contactId": contact_id, "subject": "Hi", "body": "Hello",
        })

        assert response.status_code == 400

    def test_send_now(self, client, auth_headers, contact_id, transport):
        response = client.post("/api/emails/send", headers=auth_headers, json={
            "contactId": contact_id, "subject": "Hi", "body": "Hello",
        })

        assert response.status_code == 201
        assert response.get_json()["email"]["status"] == "sent"
        assert transport.send.call_args.kwargs["to"] == "grace@example.com"

    def test_send_failure_records_nothing(self, client, auth_headers, contact_id, transport):
        transport.send.side_effect = TransportError("Failed to send email to grace@example.com")

        response = client.post("/api/emails/send", headers=auth_headers, json={
            "contactId": contact_id, "subject": "Hi", "body": "Hello",
        })

        assert response.status_code == 502
        emails = client.get("/api/emails", headers=auth_headers).get_json()
        assert emails["total"] == 0

    def test_edit_scheduled_email_back_to_draft(self, client, auth_headers, contact_id):
        email = client.post("/api/emails/schedule", headers=auth_headers, json={
            "contactId": contact_id, "subject": "Hi", "body": "Hello",
            "scheduledDate": "2026-11-02T09:00:00Z",
        }).get_json()["email"]

        response = client.put(
            f"/api/emails/{email['id']}", headers=auth_headers, json={"status": "draft"}
        )

        assert response.status_code == 400


class TestScheduledTask:

    def _schedule_due(self, client, auth_headers, contact_id):
        client.post("/api/emails/schedule", headers=auth_headers, json={
            "contactId": contact_id, "subject": "Hi", "body": "Hello",
            "scheduledDate": (utcnow() - timedelta(minutes=1)).isoformat(),
        })

    def test_send_scheduled(self, client, auth_headers, contact_id, transport, monkeypatch):
        monkeypatch.setattr(config, "DISPATCH_API_KEY", None)
        self._schedule_due(client, auth_headers, contact_id)

        response = client.post("/api/tasks/send-scheduled")

        data = response.get_json()
        assert data["processed"] == 1
        assert data["sent"] == 1
        transport.send.assert_called_once()

    def test_api_key_required_when_configured(self, client, monkeypatch):
        monkeypatch.setattr(config, "DISPATCH_API_KEY", "scheduler-key")

        assert client.post("/api/tasks/send-scheduled").status_code == 401
        response = client.post(
            "/api/tasks/send-scheduled", headers={"X-API-Key": "scheduler-key"}
        )
        assert response.status_code == 200
        assert response.get_json()["processed"] == 0
