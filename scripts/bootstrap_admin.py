#!/usr/bin/env python3
"""Bootstrap the first admin account.

Promotes an existing user (looked up by email, then username) to an approved
admin, or creates a password account with admin rights when none exists.

Usage:
    # Promote an existing account:
    python scripts/bootstrap_admin.py --email admin@example.com

    # Create a new admin account:
    ADMIN_PASSWORD=SecurePassword123 python scripts/bootstrap_admin.py \
        --email admin@example.com --username admin

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_USERNAME: Username for a newly created admin
    ADMIN_PASSWORD: Password for a newly created admin
    DATABASE_URL: PostgreSQL connection string (uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import secrets
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(
    email: str,
    username: Optional[str] = None,
    password: Optional[str] = None,
    dry_run: bool = False,
) -> dict:
    """Promote or create an admin user.

    Returns:
        dict with user_id, email, and status
        ('already_admin', 'promoted', 'created' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from karass.service.runtime import get_runtime

    runtime = get_runtime()
    existing_user = runtime.store.get_user_by_email(email)
    if existing_user is None and username:
        existing_user = runtime.store.get_user_by_username(username)

    if existing_user:
        if existing_user.is_admin and existing_user.is_approved:
            print(f"User {existing_user.username} is already an admin (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {existing_user.username} to admin")
            return {"user_id": existing_user.id, "email": email, "status": "dry_run"}
        runtime.store.update_user_flags(existing_user.id, is_admin=True, is_approved=True)
        print(f"Promoted existing user {existing_user.username} to admin (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "status": "promoted"}

    if not username or not password:
        raise ValueError("username and password are required to create a new admin")

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {username} <{email}>")
        return {"user_id": None, "email": email, "status": "dry_run"}

    result = await runtime.auth.register(email, username, password)
    runtime.store.update_user_flags(result.user.id, is_admin=True, is_approved=True)
    print(f"Created admin user: {username} (id: {result.user.id})")
    return {"user_id": result.user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for Karass",
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
        default=os.environ.get("ADMIN_USERNAME"),
        help="Username when creating a new admin (or set ADMIN_USERNAME env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Password when creating a new admin (or set ADMIN_PASSWORD env var)",
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

    # Tokens minted here are never returned, so a throwaway secret is fine
    if not os.environ.get("JWT_SECRET"):
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(
            bootstrap_admin(args.email, args.username, args.password, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
