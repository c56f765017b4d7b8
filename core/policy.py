"""
core/policy.py -- Input validation rules shared by the API and both web clients.

Every checker returns an error message string, or None when the value is
acceptable. Pydantic request models call these from field validators; the
server-rendered forms call them directly and show the message inline.
"""

import re
from typing import Optional

from core.config import get_settings

EMAIL_REGEX = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")

# Digits with an optional leading "+", 5-16 chars in total to fit the users.phone column.
PHONE_REGEX = re.compile(r"^(?=.{5,16}$)\+?\d+$")

EMAIL_MAX_LENGTH = 128
USERNAME_MAX_LENGTH = 64


def check_password(value: Optional[str]) -> Optional[str]:
    if not value:
        return "Password is required."
    if not re.match(get_settings().password_pattern, value):
        return (
            "Password must be 8-20 characters and combine upper and lower case "
            "letters, digits and special characters."
        )
    return None


def check_phone(value: Optional[str]) -> Optional[str]:
    if not value:
        return "Phone number is required."
    if not PHONE_REGEX.match(value):
        return "Invalid phone number."
    return None


def check_email(value: Optional[str]) -> Optional[str]:
    if not value:
        return "Email is required."
    if len(value) > EMAIL_MAX_LENGTH:
        return f"Email must be at most {EMAIL_MAX_LENGTH} characters."
    if not EMAIL_REGEX.match(value):
        return "Invalid email address."
    return None


def classify_identity(identity: Optional[str]) -> Optional[str]:
    """Return "email", "phone", or None for a login identity string."""
    if not identity:
        return None
    identity = identity.strip()
    if EMAIL_REGEX.match(identity) and len(identity) <= EMAIL_MAX_LENGTH:
        return "email"
    if PHONE_REGEX.match(identity):
        return "phone"
    return None


def normalize_identity(identity: str) -> str:
    """Trim whitespace and lower-case email addresses. Phone numbers are kept as-is."""
    identity = identity.strip()
    return identity.lower() if "@" in identity else identity


def generate_title(title: str) -> str:
    """Page title used by the web clients: "<title> - <app name>: <tagline>"."""
    cfg = get_settings()
    return f"{title} - {cfg.app_name}: {cfg.app_tagline}"


def is_allowed_service(service: Optional[str]) -> bool:
    """Return True if service starts with one of SSO_ALLOWED_SERVICES.

    Only http(s) URLs are considered. An empty allow-list rejects everything.
    """
    if not service or not service.startswith(("http://", "https://")):
        return False
    return any(service.startswith(prefix) for prefix in get_settings().sso_allowed_services if prefix)
