"""
accounts/store.py -- SQLAlchemy Core persistence layer for account entities.

Pattern: Repository + Data Mapper (same as nav/store.py).
UserStore is the repository; the _row_to_* functions are the mappers.
Route and dependency code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Tickets and OTP codes are stored as HMAC hashes only (see accounts/tokens).

  UNIQUE(email) and UNIQUE(phone) are enforced in SQL. Both columns are
  nullable and SQLite (like PostgreSQL) treats NULLs as distinct in UNIQUE
  constraints, so any number of phone-only or email-only users can coexist.

Layer rule: no imports from api/, web/, sso/, or nav/.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, func, literal, select
from sqlalchemy.engine import Engine

from accounts.models import OtpCode, Ticket, User
from core.config import get_settings
from core.db import make_engine

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(64)),
    Column("email", String(128), unique=True),
    Column("phone", String(16), unique=True),
    Column("password", String(192)),  # "<salt_hex>$<key_hex>"
    Column("profile", Text, nullable=False, server_default="{}"),  # JSON object
    Column("role", String(30), nullable=False, server_default="user"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_tickets = Table(
    "tickets",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("ticket_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("service", String(512)),
    Column("expires_at", String(32), nullable=False),
    Column("consumed", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_otp_codes = Table(
    "otp_codes",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("channel", String(10), nullable=False),
    Column("identity", String(128), nullable=False, index=True),
    Column("code_hash", String(64), nullable=False),  # HMAC-SHA256 hex
    Column("expires_at", String(32), nullable=False),
    Column("attempts", Integer, nullable=False, server_default="0"),
    Column("consumed", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User, Ticket and OtpCode entities.

    Usage:
        store = UserStore()
        uid = store.create_user(User(email="a@example.com", password=hash_password("Secret#123")))
        user = store.get_by_email("a@example.com")
        store.close()
    """

    # Columns update_user() accepts. Anything else is a programming error.
    _MUTABLE_FIELDS: set = {"username", "email", "phone", "password", "profile", "role", "is_active"}

    def __init__(self, db_url: str | None = None) -> None:
        self.engine: Engine = make_engine(db_url or get_settings().database_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        """Return True if at least one user record exists.

        Used by the setup redirect middleware and POST /setup to detect
        first-run state.
        """
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email or phone is already
        registered. Callers turn that into a 409.
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    email=user.email,
                    phone=user.phone,
                    password=user.password,
                    profile=json.dumps(user.profile or {}),
                    role=user.role,
                    is_active=1 if user.is_active else 0,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def create_first_admin(self, user: User) -> int | None:
        """Insert user as an admin only if no active admin exists yet.

        The existence check and the insert are one INSERT ... SELECT ... WHERE
        NOT EXISTS statement, so two concurrent first-run setups cannot both
        create an admin on SQLite (writers are serialized). Returns the new ID,
        or None if an active admin already existed.
        Raises sqlalchemy.exc.IntegrityError if the email or phone is taken.
        """
        now = _now_iso()
        values = {
            "username": user.username,
            "email": user.email,
            "phone": user.phone,
            "password": user.password,
            "profile": json.dumps(user.profile or {}),
            "role": "admin",
            "is_active": 1,
            "created_at": now,
            "updated_at": now,
        }
        admin_exists = (
            select(_users.c.id).where((_users.c.role == "admin") & (_users.c.is_active == 1)).correlate(None).exists()
        )
        source = select(*(literal(v, _users.c[k].type) for k, v in values.items())).where(~admin_exists)
        with self.engine.connect() as conn:
            result = conn.execute(_users.insert().from_select(list(values), source))
            conn.commit()
        if result.rowcount == 0:
            return None
        created = self.get_by_identity(user.email or user.phone)
        return created.id if created is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_phone(self, phone: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.phone == phone)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_identity(self, identity: str) -> User | None:
        """Look up a user by email (if the identity contains "@") or phone."""
        identity = identity.strip()
        if "@" in identity:
            return self.get_by_email(identity)
        return self.get_by_phone(identity)

    def list_users_page(self, page: int, page_size: int) -> tuple[list[User], int]:
        """Return one page of users ordered by id, plus the total user count."""
        offset = (page - 1) * page_size
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(_users)).scalar() or 0
            rows = conn.execute(_users.select().order_by(_users.c.id).limit(page_size).offset(offset)).fetchall()
        return [_row_to_user(r) for r in rows], total

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user.

        profile must be passed as a dict and is_active as bool; this method
        serializes both. updated_at is always refreshed.

        Returns True if a row was updated, False if user_id was not found.
        Raises sqlalchemy.exc.IntegrityError on an email/phone collision.
        """
        unknown = set(fields) - self._MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        if "profile" in fields:
            fields["profile"] = json.dumps(fields["profile"] or {})
        fields["updated_at"] = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def count_active_admins(self) -> int:
        """Return the number of active admin users."""
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_users).where((_users.c.role == "admin") & (_users.c.is_active == 1))
            ).scalar()
        return result or 0

    def delete_user(self, user_id: int) -> bool:
        """Permanently delete a user and any outstanding tickets.

        Returns True if deleted, False if not found. Callers enforce who may
        delete whom (admin-only route, no self-delete).
        """
        with self.engine.connect() as conn:
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
            conn.execute(_tickets.delete().where(_tickets.c.user_id == user_id))
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        """Stamp the current UTC timestamp as last_login for the given user."""
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))
            conn.commit()

    # ------------------------------------------------------------------
    # Tickets
    # ------------------------------------------------------------------

    def create_ticket(self, ticket: Ticket) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _tickets.insert().values(
                    user_id=ticket.user_id,
                    ticket_hash=ticket.ticket_hash,
                    service=ticket.service,
                    expires_at=ticket.expires_at,
                    consumed=0,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def consume_ticket(self, ticket_hash: str) -> Ticket | None:
        """Atomically mark a ticket consumed and return it.

        The UPDATE ... WHERE consumed = 0 guard means two concurrent
        redemptions of the same ticket cannot both succeed: only the one whose
        UPDATE changes a row gets the Ticket back. Returns None for unknown or
        already-consumed tickets. Expiry and service checks are the caller's
        job (accounts/tokens.redeem_ticket).
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _tickets.update()
                .where((_tickets.c.ticket_hash == ticket_hash) & (_tickets.c.consumed == 0))
                .values(consumed=1)
            )
            conn.commit()
            if result.rowcount == 0:
                return None
            row = conn.execute(_tickets.select().where(_tickets.c.ticket_hash == ticket_hash)).fetchone()
        return _row_to_ticket(row) if row is not None else None

    # ------------------------------------------------------------------
    # OTP codes
    # ------------------------------------------------------------------

    def create_otp(self, otp: OtpCode) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _otp_codes.insert().values(
                    channel=otp.channel,
                    identity=otp.identity,
                    code_hash=otp.code_hash,
                    expires_at=otp.expires_at,
                    attempts=0,
                    consumed=0,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def latest_otp(self, channel: str, identity: str) -> OtpCode | None:
        """Return the most recently issued code for (channel, identity), consumed or not."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _otp_codes.select()
                .where((_otp_codes.c.channel == channel) & (_otp_codes.c.identity == identity))
                .order_by(_otp_codes.c.id.desc())
                .limit(1)
            ).fetchone()
        return _row_to_otp(row) if row is not None else None

    def record_otp_attempt(self, otp_id: int) -> None:
        """Increment the wrong-guess counter on a code."""
        with self.engine.connect() as conn:
            conn.execute(
                _otp_codes.update().where(_otp_codes.c.id == otp_id).values(attempts=_otp_codes.c.attempts + 1)
            )
            conn.commit()

    def mark_otp_consumed(self, otp_id: int) -> bool:
        """Consume a code. Returns False if it was already consumed."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _otp_codes.update()
                .where((_otp_codes.c.id == otp_id) & (_otp_codes.c.consumed == 0))
                .values(consumed=1)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def purge_expired(self) -> int:
        """Delete expired or consumed tickets and expired OTP codes. Returns rows removed."""
        now = _now_iso()
        with self.engine.connect() as conn:
            t = conn.execute(_tickets.delete().where((_tickets.c.expires_at < now) | (_tickets.c.consumed == 1)))
            o = conn.execute(_otp_codes.delete().where(_otp_codes.c.expires_at < now))
            conn.commit()
        return t.rowcount + o.rowcount

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except Exception:
            return False

    def close(self) -> None:
        """Dispose the connection pool. Call on application shutdown."""
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    m = row._mapping
    try:
        profile = json.loads(m["profile"] or "{}")
    except ValueError:
        profile = {}
    return User(
        id=m["id"],
        username=m["username"],
        email=m["email"],
        phone=m["phone"],
        password=m["password"],
        profile=profile,
        role=m["role"],
        is_active=bool(m["is_active"]),
        created_at=m["created_at"],
        updated_at=m["updated_at"],
        last_login=m["last_login"],
    )


def _row_to_ticket(row) -> Ticket:
    m = row._mapping
    return Ticket(
        id=m["id"],
        user_id=m["user_id"],
        ticket_hash=m["ticket_hash"],
        service=m["service"],
        expires_at=m["expires_at"],
        consumed=bool(m["consumed"]),
        created_at=m["created_at"],
    )


def _row_to_otp(row) -> OtpCode:
    m = row._mapping
    return OtpCode(
        id=m["id"],
        channel=m["channel"],
        identity=m["identity"],
        code_hash=m["code_hash"],
        expires_at=m["expires_at"],
        attempts=m["attempts"],
        consumed=bool(m["consumed"]),
        created_at=m["created_at"],
    )
