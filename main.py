#!/usr/bin/env python3
"""
IDecs -- management command line.

Usage:
  python main.py create-admin --email admin@example.com
  python main.py create-admin --phone +15550100 --password 'S3cret!pass'
  python main.py api-key /api/user/login
  python main.py api-key /api/user --timestamp 1700000000000
  python main.py derive 'pleaseletmein' 'SodiumChloride'
  python main.py serve --host 0.0.0.0 --port 8000

Environment variables (see core/config.py for the full list):
  DATABASE_URL   SQLAlchemy URL. Default: sqlite file idecs.db next to this script.
  SECRET_KEY     Required unless DEBUG=true.
  API_KEY_SALT   Salt used for request signatures (api-key header).
"""

import argparse
import getpass
import sys
import time

from sqlalchemy.exc import IntegrityError

from accounts.models import User
from accounts.store import UserStore
from core.config import get_settings
from core.crypto import derive_key, generate_api_key, hash_password
from core.models import Role
from core.policy import USERNAME_MAX_LENGTH, check_email, check_password, check_phone, normalize_identity


def _create_admin(args: argparse.Namespace) -> int:
    """Create an admin account. Prompts for the password when not given."""
    if bool(args.email) == bool(args.phone):
        print("  [!] Give exactly one of --email or --phone.")
        return 2

    email = normalize_identity(args.email) if args.email else None
    phone = args.phone.strip() if args.phone else None
    error = check_email(email) if email else check_phone(phone)
    if error:
        print(f"  [!] {error}")
        return 2

    password = args.password
    if password is None:
        password = getpass.getpass("Password: ")
        if getpass.getpass("Confirm password: ") != password:
            print("  [!] Passwords do not match.")
            return 2
    error = check_password(password)
    if error:
        print(f"  [!] {error}")
        return 2

    store = UserStore()
    try:
        user_id = store.create_user(
            User(
                username=(args.username or "").strip()[:USERNAME_MAX_LENGTH] or None,
                email=email,
                phone=phone,
                password=hash_password(password),
                role=Role.admin.value,
            )
        )
    except IntegrityError:
        print("  [!] An account with that email or phone already exists.")
        return 1
    finally:
        store.close()
    print(f"  Admin account created (id {user_id}).")
    return 0


def _api_key(args: argparse.Namespace) -> int:
    """Print the signature headers for one request path."""
    timestamp = args.timestamp if args.timestamp is not None else int(time.time() * 1000)
    print(f"timestamp: {timestamp}")
    print(f"api-key: {generate_api_key(timestamp, args.path, args.salt)}")
    return 0


def _derive(args: argparse.Namespace) -> int:
    print(derive_key(args.password, args.salt))
    return 0


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("asgi:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="idecs",
        description=f"{get_settings().app_name} management commands.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("create-admin", help="Create an administrator account")
    p.add_argument("--email", help="Admin email address")
    p.add_argument("--phone", help="Admin phone number")
    p.add_argument("--username", help="Display name")
    p.add_argument("--password", help="Password (prompted when omitted)")
    p.set_defaults(func=_create_admin)

    p = sub.add_parser("api-key", help="Print timestamp / api-key headers for a request path")
    p.add_argument("path", help="Request path without query string, e.g. /api/user/login")
    p.add_argument("--timestamp", type=int, default=None, help="Epoch milliseconds (default: now)")
    p.add_argument("--salt", default=None, help="Override API_KEY_SALT")
    p.set_defaults(func=_api_key)

    p = sub.add_parser("derive", help="Print hex(scrypt(password, salt)) with the fixed parameters")
    p.add_argument("password")
    p.add_argument("salt")
    p.set_defaults(func=_derive)

    p = sub.add_parser("serve", help="Run the web server (uvicorn)")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8000)
    p.add_argument("--reload", action="store_true", help="Auto-reload on code changes (development)")
    p.set_defaults(func=_serve)

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
