#!/usr/bin/env python3
"""Create the first administrator, or reset an existing administrator's password.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure#Pass1' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure#Pass1'

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password (3-25 letters, digits or !@#$%&*)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create or update an admin account.

    Returns:
        dict with admin_id, email, and status ('created', 'password_reset' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from coopadmin.config import get_settings
    from coopadmin.service.auth import is_valid_email, normalize_email
    from coopadmin.service.runtime import Runtime

    email = normalize_email(email)
    if not is_valid_email(email):
        raise ValueError(f"invalid email address: {email!r}")

    runtime = await asyncio.to_thread(Runtime(get_settings()).connect)
    try:
        runtime.auth.policy.check(password, password)
        existing = runtime.store.get_admin_by_email(email)

        if dry_run:
            action = "reset the password of" if existing else "create"
            print(f"[DRY RUN] Would {action} admin {email}")
            return {
                "admin_id": existing.id if existing else None,
                "email": email,
                "status": "dry_run",
            }

        password_hash = await runtime.auth.hasher.hash_async(password)
        if existing:
            runtime.store.set_password(existing.id, password_hash)
            if existing.is_disabled:
                runtime.store.set_disabled(existing.id, False)
            print(f"Reset password for admin {email} (id: {existing.id})")
            return {"admin_id": existing.id, "email": email, "status": "password_reset"}

        admin = runtime.store.create_admin(email)
        runtime.store.set_password(admin.id, password_hash)
        print(f"Created admin: {email} (id: {admin.id})")
        return {"admin_id": admin.id, "email": email, "status": "created"}
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an administrator account",
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

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from coopadmin.service.errors import ServiceError

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))
    except (ServiceError, ValueError, RuntimeError) as e:
        print(f"Error: {getattr(e, 'message', e)}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin account created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Admin ID: {result['admin_id']}")
    elif result["status"] == "password_reset":
        print("\nExisting admin password reset; previous sessions expire on their own schedule.")


if __name__ == "__main__":
    main()
