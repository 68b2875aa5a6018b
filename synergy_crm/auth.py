"""
Authentication utilities for the Synergy CRM API.

Provides JWT-based authentication with password hashing.
"""

from datetime import datetime, timedelta, timezone
from functools import wraps
from typing import Optional, Callable, Any

import bcrypt
import jwt
from flask import request, jsonify, g
from sqlalchemy.orm import Session

from .config import config
from .models import User, utcnow


def hash_password(password: str) -> str:
    """Hash a password using bcrypt."""
    salt = bcrypt.gensalt()
    return bcrypt.hashpw(password.encode('utf-8'), salt).decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its hash."""
    return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))


def create_access_token(user_id: str, email: str) -> str:
    """
    Create a JWT access token for a user.

    Args:
        user_id: The user's database ID
        email: The user's email address

    Returns:
        JWT token string
    """
    expiration = datetime.now(timezone.utc) + timedelta(hours=config.JWT_EXPIRATION_HOURS)

    payload = {
        "sub": user_id,
        "email": email,
        "exp": expiration,
        "iat": datetime.now(timezone.utc),
    }

    return jwt.encode(payload, config.SECRET_KEY, algorithm=config.JWT_ALGORITHM)


def decode_access_token(token: str) -> Optional[dict]:
    """
    Decode and validate a JWT access token.

    Returns:
        Token payload dict if valid, None if invalid/expired
    """
    try:
        return jwt.decode(
            token,
            config.SECRET_KEY,
            algorithms=[config.JWT_ALGORITHM]
        )
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None


def get_current_user_from_token(db: Session, token: str) -> Optional[User]:
    """Get the active user a JWT token was issued to."""
    payload = decode_access_token(token)
    if not payload:
        return None

    user_id = payload.get("sub")
    if not user_id:
        return None

    return db.query(User).filter(User.id == user_id, User.is_active == True).first()


def require_auth(f: Callable) -> Callable:
    """
    Decorator that requires JWT authentication.

    Sets g.current_user to the authenticated user, loaded through the
    request's database session (g.db).
    """
    @wraps(f)
    def decorated_function(*args: Any, **kwargs: Any) -> Any:
        auth_header = request.headers.get('Authorization')

        if not auth_header:
            return jsonify({"error": "Missing Authorization header"}), 401

        # Extract token from "Bearer <token>" format
        parts = auth_header.split()
        if len(parts) != 2 or parts[0].lower() != 'bearer':
            return jsonify({"error": "Invalid Authorization header format"}), 401

        user = get_current_user_from_token(g.db, parts[1])
        if not user:
            return jsonify({"error": "Invalid or expired token"}), 401

        g.current_user = user

        return f(*args, **kwargs)

    return decorated_function


# ========================================
# User Service Functions
# ========================================

def create_user(
    db: Session,
    email: str,
    password: str,
    full_name: str,
) -> tuple[Optional[User], Optional[str]]:
    """
    Create a new user account.

    Returns:
        Tuple of (User, None) on success, or (None, error_message) on failure
    """
    existing = db.query(User).filter(User.email == email.lower()).first()
    if existing:
        return None, "Email already registered"

    user = User(
        email=email.lower(),
        password_hash=hash_password(password),
        full_name=full_name,
        sender_email=email.lower(),
    )
    db.add(user)
    db.flush()
    return user, None


def authenticate_user(db: Session, email: str, password: str) -> tuple[Optional[User], Optional[str]]:
    """
    Authenticate a user with email and password.

    Returns:
        Tuple of (User, None) on success, or (None, error_message) on failure
    """
    user = db.query(User).filter(User.email == email.lower()).first()

    if not user:
        return None, "Invalid email or password"

    if not user.is_active:
        return None, "Account is disabled"

    if not verify_password(password, user.password_hash):
        return None, "Invalid email or password"

    user.last_login_at = utcnow()
    db.flush()
    return user, None
