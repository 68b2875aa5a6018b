#!/usr/bin/env python3
"""
Flask API server for the Synergy CRM.

Serves the web client (contacts, card scanning, email generation,
sending and scheduling) and exposes the dispatch task the external
scheduler calls to deliver due follow-up emails.
"""

import logging
import re
import sys
from datetime import datetime, timezone
from functools import wraps
from flask import Flask, jsonify, request, g
from flask_cors import CORS
from sqlalchemy.exc import SQLAlchemyError

from synergy_crm.config import config
from synergy_crm.database import init_db, SessionLocal
from synergy_crm.dispatch import DispatchEngine
from synergy_crm.errors import SynergyError, ValidationError
from synergy_crm.llm import TextGenerator
from synergy_crm.models import EmailStatus
from synergy_crm.auth import (
    require_auth, create_access_token, create_user, authenticate_user
)
from synergy_crm.services import (
    BusinessCardService, ContactService, FollowUpEmailService, GenerationService
)
from synergy_crm.storage import CardImageStorage
from synergy_crm.transport import get_transport

logger = logging.getLogger(__name__)

# ========================================
# App Configuration
# ========================================

app = Flask(__name__)
app.config['SECRET_KEY'] = config.SECRET_KEY
app.config['SESSION_FACTORY'] = SessionLocal
app.config['MAX_CONTENT_LENGTH'] = config.MAX_CARD_IMAGE_BYTES + 1024 * 1024

# External collaborators, created on first use; tests swap in mocks
app.config['MAIL_TRANSPORT'] = None
app.config['TEXT_GENERATOR'] = None
app.config['CARD_STORAGE'] = None

# CORS Configuration
CORS(app, origins=config.ALLOWED_ORIGINS, supports_credentials=True)


# ========================================
# Utilities
# ========================================

def validate_email(email: str) -> bool:
    """Validate email format."""
    pattern = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
    return bool(re.match(pattern, email))


def _transport():
    if app.config['MAIL_TRANSPORT'] is None:
        app.config['MAIL_TRANSPORT'] = get_transport()
    return app.config['MAIL_TRANSPORT']


def _generator():
    if app.config['TEXT_GENERATOR'] is None:
        app.config['TEXT_GENERATOR'] = TextGenerator()
    return app.config['TEXT_GENERATOR']


def _storage():
    if app.config['CARD_STORAGE'] is None:
        app.config['CARD_STORAGE'] = CardImageStorage()
    return app.config['CARD_STORAGE']


def _body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def require_dispatch_key(f):
    """Shared-key authentication for the scheduler (open if no key is configured)."""
    @wraps(f)
    def decorated(*args, **kwargs):
        if not config.DISPATCH_API_KEY:
            return f(*args, **kwargs)

        provided_key = request.headers.get('X-API-Key')
        if not provided_key or provided_key != config.DISPATCH_API_KEY:
            return jsonify({"error": "Invalid or missing API key"}), 401

        return f(*args, **kwargs)
    return decorated


# ========================================
# Request Hooks
# ========================================

@app.before_request
def before_request():
    """Open a database session for the request."""
    g.db = app.config['SESSION_FACTORY']()


@app.after_request
def after_request(response):
    """Commit successful requests before the response goes out."""
    db = g.get('db')
    if db is None:
        return response
    if response.status_code < 400:
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Commit failed: {e}")
            response = jsonify({"success": False, "error": "Failed to save changes"})
            response.status_code = 500
    else:
        db.rollback()
    return response


@app.teardown_request
def teardown_request(exception=None):
    """Clean up database session."""
    db = g.pop('db', None)
    if db is not None:
        if exception:
            db.rollback()
        db.close()


@app.errorhandler(SynergyError)
def handle_synergy_error(error: SynergyError):
    return jsonify({"success": False, "error": error.message}), error.status_code


@app.errorhandler(SQLAlchemyError)
def handle_database_error(error: SQLAlchemyError):
    db = g.get('db')
    if db is not None:
        db.rollback()
    logger.error(f"Database error: {error}")
    return jsonify({"success": False, "error": "Database operation failed"}), 500


# ========================================
# Health Check
# ========================================

@app.route('/api/health', methods=['GET'])
def health_check():
    """Health check endpoint."""
    return jsonify({
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": "1.0.0"
    })


# ========================================
# Authentication Endpoints
# ========================================

def _user_json(user) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "fullName": user.full_name,
        "senderEmail": user.sender_email,
    }


@app.route('/api/auth/register', methods=['POST'])
def register():
    """Register a new user."""
    data = _body()

    email = (data.get('email') or '').strip()
    password = data.get('password') or ''
    full_name = (data.get('fullName') or data.get('full_name') or '').strip()

    if not email or not validate_email(email):
        return jsonify({"error": "Valid email is required"}), 400

    if len(password) < 8:
        return jsonify({"error": "Password must be at least 8 characters"}), 400

    if not full_name:
        return jsonify({"error": "Full name is required"}), 400

    user, error = create_user(g.db, email, password, full_name)
    if error:
        return jsonify({"error": error}), 400

    token = create_access_token(user.id, user.email)

    return jsonify({"success": True, "token": token, "user": _user_json(user)}), 201


@app.route('/api/auth/login', methods=['POST'])
def login():
    """Login and get access token."""
    data = _body()

    email = (data.get('email') or '').strip()
    password = data.get('password') or ''

    if not email or not password:
        return jsonify({"error": "Email and password are required"}), 400

    user, error = authenticate_user(g.db, email, password)
    if error:
        return jsonify({"error": error}), 401

    token = create_access_token(user.id, user.email)

    return jsonify({"success": True, "token": token, "user": _user_json(user)})


@app.route('/api/auth/me', methods=['GET'])
@require_auth
def get_current_user():
    """Get current authenticated user."""
    return jsonify(_user_json(g.current_user))


@app.route('/api/auth/profile', methods=['PUT'])
@require_auth
def update_profile():
    """Update the sender details used on outgoing email."""
    data = _body()
    user = g.current_user

    if 'fullName' in data:
        full_name = (data['fullName'] or '').strip()
        if not full_name:
            return jsonify({"error": "Full name is required"}), 400
        user.full_name = full_name
    if 'senderEmail' in data:
        sender_email = (data['senderEmail'] or '').strip()
        if sender_email and not validate_email(sender_email):
            return jsonify({"error": "Invalid email format"}), 400
        user.sender_email = sender_email or None

    return jsonify({"success": True, "user": _user_json(user)})


# ========================================
# Contacts Endpoints
# ========================================

# Map camelCase to snake_case
CONTACT_FIELD_MAP = {
    'name': 'name',
    'email': 'email',
    'phone': 'phone',
    'company': 'company',
    'website': 'website',
    'position': 'position',
    'notes': 'notes',
    'tags': 'tags',
}


@app.route('/api/contacts', methods=['GET'])
@require_auth
def get_contacts():
    """Get all contacts for the current user, newest first."""
    skip = request.args.get('skip', 0, type=int)
    limit = request.args.get('limit', 100, type=int)
    search = request.args.get('search')
    tag = request.args.get('tag')

    service = ContactService(g.db, g.current_user)
    contacts = service.get_all(skip=skip, limit=limit, search=search, tag=tag)

    return jsonify({
        "contacts": [c.to_dict() for c in contacts],
        "total": service.get_count(),
    })


@app.route('/api/contacts', methods=['POST'])
@require_auth
def add_contact():
    """Add a new contact."""
    data = _body()

    email = (data.get('email') or '').strip()
    if email and not validate_email(email):
        return jsonify({"error": "Invalid email format"}), 400

    service = ContactService(g.db, g.current_user)
    fields = {snake: data[camel] for camel, snake in CONTACT_FIELD_MAP.items() if camel in data}
    contact = service.create(**{"name": None, **fields})

    return jsonify({"success": True, "contact": contact.to_dict()}), 201


@app.route('/api/contacts/<contact_id>', methods=['GET'])
@require_auth
def get_contact(contact_id):
    """Get one contact with its follow-up emails."""
    contact = ContactService(g.db, g.current_user).require(contact_id)
    emails = FollowUpEmailService(g.db, g.current_user).list_for_contact(contact_id)

    return jsonify({
        "contact": contact.to_dict(),
        "emails": [e.to_dict() for e in emails],
    })


@app.route('/api/contacts/<contact_id>', methods=['PUT'])
@require_auth
def update_contact(contact_id):
    """Update a contact."""
    data = _body()

    if data.get('email') and not validate_email(data['email'].strip()):
        return jsonify({"error": "Invalid email format"}), 400

    update_data = {snake: data[camel] for camel, snake in CONTACT_FIELD_MAP.items() if camel in data}
    contact = ContactService(g.db, g.current_user).update(contact_id, **update_data)

    return jsonify({"success": True, "contact": contact.to_dict()})


@app.route('/api/contacts/<contact_id>', methods=['DELETE'])
@require_auth
def delete_contact(contact_id):
    """Delete a contact and all of its follow-up emails."""
    removed = ContactService(g.db, g.current_user).delete(contact_id)
    return jsonify({"success": True, "emailsDeleted": removed})


@app.route('/api/contacts/<contact_id>/notes', methods=['GET'])
@require_auth
def get_contact_notes(contact_id):
    """Get the accumulated synergy notes for a contact."""
    service = GenerationService(g.db, g.current_user, generator=_generator())
    return jsonify({"contactId": contact_id, "notes": service.get_notes(contact_id)})


@app.route('/api/contacts/scan', methods=['POST'])
@require_auth
def scan_business_card():
    """Upload a business card photo and save the extracted contact."""
    if 'image' not in request.files:
        return jsonify({"error": "No image uploaded"}), 400

    image = request.files['image']
    service = BusinessCardService(
        g.db, g.current_user, generator=_generator(), storage=_storage()
    )
    contact, extraction = service.scan(image.read(), image.mimetype)

    return jsonify({
        "success": True,
        "message": "Contact successfully extracted and saved",
        "contact": contact.to_dict(),
        "extraction": extraction.to_dict(),
    }), 201


@app.route('/api/contacts/import', methods=['POST'])
@require_auth
def import_contacts():
    """Import contacts from CSV."""
    if 'file' in request.files:
        csv_content = request.files['file'].read().decode('utf-8')
    else:
        csv_content = _body().get('csv', '')

    if not csv_content:
        return jsonify({"error": "No CSV content provided"}), 400

    imported, errors = ContactService(g.db, g.current_user).import_from_csv(csv_content)

    return jsonify({
        "success": True,
        "imported": imported,
        "errors": errors[:10],  # Limit errors returned
        "totalErrors": len(errors),
    })


@app.route('/api/contacts/export', methods=['GET'])
@require_auth
def export_contacts():
    """Export contacts to CSV."""
    csv_content = ContactService(g.db, g.current_user).export_to_csv()

    return csv_content, 200, {
        'Content-Type': 'text/csv',
        'Content-Disposition': 'attachment; filename=contacts.csv'
    }


# ========================================
# Email Generation & Follow-ups
# ========================================

@app.route('/api/generate', methods=['POST'])
@require_auth
def generate_email():
    """Generate a follow-up email from a contact's synergy notes."""
    data = _body()

    contact_id = data.get('contactId')
    if not contact_id:
        return jsonify({"error": "contactId is required"}), 400

    service = GenerationService(g.db, g.current_user, generator=_generator())
    email_text = service.generate(contact_id, data.get('notes'))

    return jsonify({"success": True, "email": email_text})


@app.route('/api/emails', methods=['GET'])
@require_auth
def get_emails():
    """List follow-up emails, optionally filtered by status."""
    status = request.args.get('status')
    skip = request.args.get('skip', 0, type=int)
    limit = request.args.get('limit', 100, type=int)

    emails = FollowUpEmailService(g.db, g.current_user).list_all(
        status=EmailStatus.parse(status) if status else None,
        skip=skip,
        limit=limit,
    )
    return jsonify({"emails": [e.to_dict() for e in emails], "total": len(emails)})


@app.route('/api/emails', methods=['POST'])
@require_auth
def create_email():
    """Create a draft or scheduled email. Unknown statuses become drafts."""
    data = _body()

    email = FollowUpEmailService(g.db, g.current_user).create(
        contact_id=data.get('contactId'),
        subject=data.get('subject'),
        body=data.get('body'),
        status=EmailStatus.coerce(data.get('status')),
        scheduled_date=data.get('scheduledDate'),
    )
    return jsonify({"success": True, "email": email.to_dict()}), 201


@app.route('/api/emails/schedule', methods=['POST'])
@require_auth
def schedule_email():
    """Schedule a new follow-up email for later delivery."""
    data = _body()

    if not data.get('scheduledDate'):
        raise ValidationError("Please select when you want to send this email")

    email = FollowUpEmailService(g.db, g.current_user).create(
        contact_id=data.get('contactId'),
        subject=data.get('subject'),
        body=data.get('body'),
        status=EmailStatus.SCHEDULED,
        scheduled_date=data.get('scheduledDate'),
    )
    return jsonify({"success": True, "email": email.to_dict()}), 201


@app.route('/api/emails/send', methods=['POST'])
@require_auth
def send_email_now():
    """Send a follow-up email immediately."""
    data = _body()

    email = FollowUpEmailService(g.db, g.current_user).send_now(
        contact_id=data.get('contactId'),
        subject=data.get('subject'),
        body=data.get('body'),
        transport=_transport(),
    )
    return jsonify({"success": True, "email": email.to_dict()}), 201


@app.route('/api/emails/<email_id>', methods=['PUT'])
@require_auth
def update_email(email_id):
    """Edit a draft or scheduled email."""
    data = _body()

    update_data = {}
    if 'subject' in data:
        update_data['subject'] = data['subject']
    if 'body' in data:
        update_data['body'] = data['body']
    if 'status' in data:
        update_data['status'] = EmailStatus.coerce(data['status'])
    if 'scheduledDate' in data:
        update_data['scheduled_date'] = data['scheduledDate']

    email = FollowUpEmailService(g.db, g.current_user).update(email_id, **update_data)
    return jsonify({"success": True, "email": email.to_dict()})


@app.route('/api/emails/<email_id>', methods=['DELETE'])
@require_auth
def delete_email(email_id):
    """Delete a follow-up email."""
    FollowUpEmailService(g.db, g.current_user).delete(email_id)
    return jsonify({"success": True})


@app.route('/api/stats', methods=['GET'])
@require_auth
def get_stats():
    """Get overall statistics."""
    return jsonify({
        "contacts": ContactService(g.db, g.current_user).get_stats(),
        "emails": FollowUpEmailService(g.db, g.current_user).get_stats(),
    })


# ========================================
# Scheduled Tasks
# ========================================

@app.route('/api/tasks/send-scheduled', methods=['POST'])
@require_dispatch_key
def send_scheduled_emails():
    """Deliver every follow-up email that is due. Called by the scheduler."""
    engine = DispatchEngine(
        transport=_transport(),
        session_factory=app.config['SESSION_FACTORY'],
    )
    report = engine.run_once()
    return jsonify(report.to_dict())


# ========================================
# Main Entry Point
# ========================================

if __name__ == '__main__':
    import argparse

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    parser = argparse.ArgumentParser(description='Synergy CRM API Server')
    parser.add_argument('--debug', action='store_true', help='Run in debug mode')
    parser.add_argument('--port', type=int, default=config.API_PORT, help='Port to run on')
    parser.add_argument('--host', default=config.API_HOST, help='Host to bind to')
    parser.add_argument('--init-db', action='store_true', help='Initialize database')
    args = parser.parse_args()

    if args.init_db:
        print("Initializing database...")
        init_db()
        print("Database initialized!")
        sys.exit(0)

    debug_mode = args.debug or config.FLASK_DEBUG

    for problem in config.validate():
        logger.warning(f"Configuration: {problem}")

    init_db()

    print("\nSynergy CRM API Server")
    print("=" * 40)
    print(f"API running at: http://{args.host}:{args.port}")
    print(f"Debug mode: {'ON' if debug_mode else 'OFF'}")
    print(f"Database: {config.DATABASE_URL}")
    print("=" * 40)
    print("\nPress Ctrl+C to stop\n")

    app.run(host=args.host, port=args.port, debug=debug_mode)
