#!/usr/bin/env python3
"""Create the first ADMIN account, or promote an existing one.

Usage:
    python scripts/bootstrap_admin.py --email admin@example.com --password 'Str0ng!Pass'

    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Str0ng!Pass' python scripts/bootstrap_admin.py

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (same rules as signup)
    ADMIN_NAME: Display name for a newly created admin (default "Administrator")
    DATABASE_URL: PostgreSQL connection string (memory store if unset)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(
    email: str, password: str, full_name: str, dry_run: bool = False
) -> dict:
    """Returns a dict with user_id, email and status (created, promoted, dry_run)."""
    # imported late so the env defaults below are in place before settings load
    from linesauth.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_user_by_email(email)

    if dry_run:
        action = "promote existing user" if existing else "create admin user"
        print(f"[DRY RUN] Would {action}: {email}")
        return {
            "user_id": existing.id if existing else None,
            "email": email,
            "status": "dry_run",
        }

    try:
        user, created = await runtime.auth.bootstrap_admin(email, password, full_name)
    finally:
        runtime.close()
    return {
        "user_id": user.id,
        "email": user.email,
        "status": "created" if created else "promoted",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for the Lines auth service",
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
        "--name",
        default=os.environ.get("ADMIN_NAME", "Administrator"),
        help="Display name for a new admin",
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

    from linesauth.api.schemas import validate_email, validate_password_strength

    try:
        email = validate_email(args.email)
        validate_password_strength(args.password)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/linesauth-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(
            bootstrap_admin(email, args.password, args.name, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    if result["user_id"]:
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")


if __name__ == "__main__":
    main()
