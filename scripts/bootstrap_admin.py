#!/usr/bin/env python3
"""Seed the tracker's administrator account.

Creates the account with the Admin role, or grants Admin to an account that
already exists under that email. Registration through the API never hands out
Admin, so this is the only way to get one.

Usage:
    ADMIN_EMAIL=admin@tracker.local ADMIN_PASSWORD='Sup3r-Secret-Pass' python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@tracker.local --password 'Sup3r-Secret-Pass' --dry-run

Environment Variables:
    ADMIN_EMAIL: account email (default: admin@tracker.local)
    ADMIN_PASSWORD: account password, 12+ characters from 3 of 4 character classes
    DATABASE_URL: PostgreSQL connection string; the in-memory store is used when unset
    JWT_SECRET / JWT_ISSUER / JWT_AUDIENCE: signing configuration
"""
from __future__ import annotations

import argparse
import asyncio
import os
import string
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

ADMIN_ROLE = "Admin"
DEFAULT_ADMIN_EMAIL = "admin@tracker.local"
MIN_ADMIN_PASSWORD_LENGTH = 12

_CHARACTER_CLASSES = (
    string.ascii_uppercase,
    string.ascii_lowercase,
    string.digits,
    string.punctuation,
)

_OUTCOME_MESSAGES = {
    "created": "Admin account created: {email} (id: {user_id})",
    "promoted": "Existing account promoted to admin: {email} (id: {user_id})",
    "already_admin": "No changes needed: {email} is already an admin (id: {user_id})",
    "dry_run": "[DRY RUN] {email} would be {action}",
}


def strong_enough(password: str) -> bool:
    """Admin passwords are held to a stricter bar than self-service ones."""
    if len(password) < MIN_ADMIN_PASSWORD_LENGTH:
        return False
    classes = sum(any(c in chars for c in password) for chars in _CHARACTER_CLASSES)
    return classes >= 3


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create or promote the admin account.

    Returns:
        dict with user_id, email and status (created, promoted, already_admin, dry_run)
    """
    # Imported late so the environment is settled before settings load
    from trackerauth.service.runtime import get_runtime

    runtime = get_runtime()
    user = runtime.store.get_user_by_email(email)
    summary = {"user_id": user.id if user else None, "email": email}

    if user and ADMIN_ROLE in user.roles:
        return {**summary, "status": "already_admin"}
    if dry_run:
        return {**summary, "status": "dry_run", "action": "promoted" if user else "created"}
    if user:
        runtime.store.add_user_to_role(user.id, ADMIN_ROLE)
        return {**summary, "status": "promoted"}

    result = await runtime.auth.register(email, password, "Admin", "User", ADMIN_ROLE)
    if not result.success:
        raise RuntimeError("; ".join(result.errors))
    return {**summary, "user_id": result.user_id, "status": "created"}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Seed the tracker administrator account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL", DEFAULT_ADMIN_EMAIL))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would change without writing anything",
    )
    args = parser.parse_args(argv)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD is required")
        return 1
    if not strong_enough(args.password):
        print(
            f"Error: admin password needs {MIN_ADMIN_PASSWORD_LENGTH}+ characters from at "
            "least 3 of: uppercase, lowercase, digits, punctuation"
        )
        return 1
    if not os.environ.get("JWT_SECRET"):
        print("Error: JWT_SECRET must be set")
        return 1
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: DATABASE_URL is unset, using the in-memory store (nothing is persisted)")

    try:
        outcome = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))
    except Exception as exc:
        print(f"Error: {exc}")
        return 1

    print(_OUTCOME_MESSAGES[outcome["status"]].format(**outcome))
    return 0


if __name__ == "__main__":
    sys.exit(main())
