#!/usr/bin/env python3
"""Bootstrap an admin account for initial setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_USERNAME=admin ADMIN_PASSWORD='Secure-Pass1' \
        python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --username admin --password 'Secure-Pass1'

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_USERNAME: Username for the admin account (new accounts only)
    ADMIN_PASSWORD: Password for the admin account (must satisfy the password policy)
    DATABASE_URL: PostgreSQL connection string (uses the file-backed memory store if not set)
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


async def bootstrap_admin(
    credentials,
    email: str,
    username: str,
    password: str,
    *,
    display_name: str | None = None,
    dry_run: bool = False,
) -> dict:
    """Create an admin account, or grant admin to an existing one.

    Returns:
        dict with user_id, email and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    from authcore.service.validation import normalize_email
    from authcore.storage.models import Role

    email = normalize_email(email)

    existing = credentials.store.get_user_by_email(email)
    if existing:
        if await credentials.has_role(existing.id, Role.ADMIN):
            print(f"User {email} already has the admin role (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would grant admin to existing user {email}")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        await credentials.assign_role(existing.id, Role.ADMIN)
        print(f"Granted admin to existing user {email} (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = await credentials.register(email, username, display_name or username, password)
    await credentials.assign_role(user.id, Role.ADMIN)
    print(f"Created admin user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": user.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for authcore",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME", "admin"),
        help="Admin username for a new account (or set ADMIN_USERNAME env var)",
    )
    parser.add_argument("--display-name", default=None, help="Display name for a new account")
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

    # Use the file-backed memory store if no database is configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using the memory store under SHARED_FS_ROOT (set DATABASE_URL for Postgres)")

    # Import here so the environment above is in place before settings load
    from authcore.service.errors import ServiceError
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        result = asyncio.run(
            bootstrap_admin(
                runtime.credentials,
                args.email,
                args.username,
                args.password,
                display_name=args.display_name,
                dry_run=args.dry_run,
            )
        )
    except ServiceError as e:
        print(f"Error: {e.message}")
        sys.exit(1)
    finally:
        runtime.close()

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
