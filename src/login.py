"""
Credential check behind the /login entry point.

Account management is handled elsewhere. This only validates the sign-in form
and checks the submitted password against the bcrypt hash in the configured
account table.
"""

import hashlib
import re

import bcrypt

from src.config import Settings
from src.session import User

EMAIL_PATTERN = re.compile(r"\S+@\S+\.\S+")

# Checked when the email is unknown, so both failures cost one bcrypt round.
_UNKNOWN_ACCOUNT_HASH = bcrypt.hashpw(b"unknown-account", bcrypt.gensalt()).decode("utf-8")


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Not a bcrypt hash.
        return False


def validate_login_form(email: str, password: str) -> dict[str, str]:
    errors: dict[str, str] = {}
    if not email:
        errors["email"] = "Email is required"
    elif not EMAIL_PATTERN.search(email):
        errors["email"] = "Please enter a valid email address"
    if not password:
        errors["password"] = "Password is required"
    return errors


def authenticate(settings: Settings, email: str, password: str) -> User | None:
    normalized = email.strip().lower()
    password_hash = settings.accounts.get(normalized) or settings.accounts.get(email)
    if password_hash is None:
        verify_password(password, _UNKNOWN_ACCOUNT_HASH)
        return None
    if not verify_password(password, password_hash):
        return None
    # Stable opaque id derived from the address, so the same account maps to
    # the same subject across restarts.
    user_id = hashlib.sha256(normalized.encode()).hexdigest()[:24]
    return User(id=user_id, email=normalized)
