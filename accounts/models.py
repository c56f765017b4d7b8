"""
accounts/models.py -- Domain dataclasses for account entities.

Pattern: Data class (pure data container, zero logic). Stores and routes do
the work.

Layer rule: no imports from api/, web/, sso/, or nav/.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class User:
    """An account in IDecs.

    At least one of email / phone is set; both are unique when present. The
    username is a display name and is not unique.

    password holds "<salt_hex>$<key_hex>" from core.crypto.hash_password(). It
    is None only for accounts created before a password was chosen and is
    never serialized by the API.
    """

    username: str | None = None
    email: str | None = None
    phone: str | None = None
    password: str | None = None
    profile: dict = field(default_factory=dict)
    role: str = "user"  # "user" | "admin"
    id: int | None = None
    is_active: bool = True
    created_at: str | None = None
    updated_at: str | None = None
    last_login: str | None = None

    def to_public(self) -> dict:
        """Serializable view without the password hash."""
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "phone": self.phone,
            "profile": self.profile,
            "role": self.role,
            "isActive": self.is_active,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "lastLogin": self.last_login,
        }


@dataclass
class Ticket:
    """A one-shot login ticket, exchanged for a session token exactly once.

    Only ticket_hash (HMAC-SHA256 of the raw ticket) is persisted. service is
    set when the ticket was issued by the SSO client for a relying service and
    must then match at redemption.
    """

    user_id: int
    ticket_hash: str
    expires_at: str
    service: str | None = None
    consumed: bool = False
    id: int | None = None
    created_at: str | None = None


@dataclass
class OtpCode:
    """A one-time code sent to an email address or phone number."""

    channel: str  # "sms" | "email"
    identity: str
    code_hash: str
    expires_at: str
    attempts: int = 0
    consumed: bool = False
    id: int | None = None
    created_at: str | None = None
