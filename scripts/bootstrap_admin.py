#!/usr/bin/env python3
"""Create or promote an administrator account.

The account is created verified and ACTIVE so it can sign in immediately;
an existing account is promoted in place and keeps its password unless
``--reset-password`` is given.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123!
    python scripts/bootstrap_admin.py --email ops@example.com --role super_admin --dry-run

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password (at least 12 characters, 3+ character classes)
    DATABASE_URL: PostgreSQL connection string (memory store when unset)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

ADMIN_ROLES = ("admin", "super_admin")


def validate_password(password: str) -> bool:
    """At least 12 characters drawing on three of upper, lower, digit, symbol."""
    if len(password) < 12 or len(password) > 128:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_admin(
    email: str,
    password: str,
    *,
    role: str = "admin",
    dry_run: bool = False,
    reset_password: bool = False,
    runtime=None,
) -> dict:
    """Create or promote an admin account.

    Returns:
        dict with account_id, email and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    from authengine.service.auth import normalize_email
    from authengine.storage.models import AccountStatus

    if runtime is None:
        from authengine.service.runtime import get_runtime

        runtime = get_runtime()
    store = runtime.store
    credentials = runtime.auth.credentials
    email = normalize_email(email)

    existing = store.get_account_by_email(email)
    if existing:
        if existing.role == role and existing.is_verified and existing.status == AccountStatus.ACTIVE:
            if reset_password and not dry_run:
                store.save_password(existing.id, *credentials.hash_password(password))
            print(f"Account {email} is already {role} (id: {existing.id})")
            return {"account_id": existing.id, "email": email, "status": "already_admin"}

        if dry_run:
            print(f"[DRY RUN] Would promote existing account {email} to {role}")
            return {"account_id": existing.id, "email": email, "status": "dry_run"}

        store.update_account_role(existing.id, role)
        if not existing.is_verified:
            store.mark_account_verified(existing.id)
        elif existing.status != AccountStatus.ACTIVE:
            store.set_account_status(existing.id, AccountStatus.ACTIVE)
        if reset_password:
            store.save_password(existing.id, *credentials.hash_password(password))
        runtime.auth.lockout.reset(email)
        print(f"Promoted existing account {email} to {role} (id: {existing.id})")
        return {"account_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create {role} account: {email}")
        return {"account_id": None, "email": email, "status": "dry_run"}

    account = store.create_account(
        email, role=role, status=AccountStatus.ACTIVE, is_verified=True
    )
    store.save_password(account.id, *credentials.hash_password(password))
    print(f"Created {role} account: {email} (id: {account.id})")
    return {"account_id": account.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an administrator account for AuthEngine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--role",
        choices=ADMIN_ROLES,
        default="admin",
        help="Role to grant (default: admin)",
    )
    parser.add_argument(
        "--reset-password",
        action="store_true",
        help="Overwrite the password of an existing account",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be 12-128 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/authengine-bootstrap"

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print(f"Note: Using the file-backed memory store under {os.environ['SHARED_FS_ROOT']}")

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.email,
                args.password,
                role=args.role,
                dry_run=args.dry_run,
                reset_password=args.reset_password,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin account created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
    elif result["status"] == "promoted":
        print("\nExisting account promoted!")
    elif result["status"] == "already_admin":
        print("\nNo role changes needed.")


if __name__ == "__main__":
    main()
