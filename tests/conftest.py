"""Pytest configuration and fixtures."""

from unittest.mock import MagicMock

import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from synergy_crm.auth import hash_password
from synergy_crm.database import create_db_engine, get_db, init_db
from synergy_crm.llm import TextGenerator
from synergy_crm.models import Contact, EmailStatus, FollowUpEmail, User, utcnow
from synergy_crm.transport import MailTransport


@pytest.fixture
def engine():
    """In-memory SQLite shared by every session in a test."""
    test_engine = create_db_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def user_id(session_factory):
    """A committed user account; load it per session with db.get(User, user_id)."""
    with get_db(session_factory) as db:
        user = User(
            email="ada@example.com",
            password_hash=hash_password("correct horse"),
            full_name="Ada Lovelace",
            sender_email="ada@example.com",
        )
        db.add(user)
        db.flush()
        return user.id


@pytest.fixture
def db(session_factory):
    """A session for service-level tests, closed afterwards."""
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def user(db, user_id):
    return db.get(User, user_id)


@pytest.fixture
def transport():
    return MagicMock(spec=MailTransport)


@pytest.fixture
def generator():
    mock = MagicMock(spec=TextGenerator)
    mock.complete.return_value = "Hi Grace,\n\nGreat to meet you.\n\nAda"
    return mock


@pytest.fixture
def seed_contact(session_factory, user_id):
    """Commit a contact for the test user and return its id."""
    def _seed(**fields):
        values = {"name": "Grace Hopper", "email": "grace@example.com", "tags": []}
        values.update(fields)
        with get_db(session_factory) as db:
            contact = Contact(user_id=user_id, **values)
            db.add(contact)
            db.flush()
            return contact.id
    return _seed


@pytest.fixture
def seed_email(session_factory):
    """Commit a follow-up email and return its id."""
    def _seed(contact_id, **fields):
        values = {
            "subject": "Following up",
            "body": "Lovely chatting at the conference.",
            "status": EmailStatus.DRAFT,
            "created_at": utcnow(),
        }
        values.update(fields)
        with get_db(session_factory) as db:
            email = FollowUpEmail(contact_id=contact_id, **values)
            db.add(email)
            db.flush()
            return email.id
    return _seed
