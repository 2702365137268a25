#!/usr/bin/env python3
"""Create or promote an administrator in the configured credential store.

Usage:
    ADMIN_EMAIL=ops@example.com ADMIN_PASSWORD=Str0ngPassword python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email ops@example.com --password Str0ngPassword

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (8+ chars, upper, lower and digit)
    DATA_ROOT / STORAGE_BACKEND / REDIS_URL: where the store lives, as for the server
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create the admin, or promote an existing account with that email.

    Returns:
        dict with user_id, email and status ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # deferred so argument parsing never reads settings
    from tradedesk.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_user_by_email(email)

    if existing:
        if existing.role == "admin":
            return {"user_id": existing.id, "email": existing.email, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id, "email": existing.email, "status": "dry_run"}
        runtime.store.update_user(existing.id, role="admin", is_active=True)
        return {"user_id": existing.id, "email": existing.email, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = runtime.store.create_user(
        email,
        "Admin",
        "User",
        runtime.hasher.hash(password),
        role="admin",
    )
    return {"user_id": user.id, "email": user.email, "status": "created"}


def main() -> None:
    from tradedesk.service.auth import PASSWORD_RULES_MESSAGE, is_strong_password, is_valid_email

    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for the trading dashboard",
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

    if not args.email or not is_valid_email(args.email):
        print("Error: a valid --email or ADMIN_EMAIL is required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)
    if not is_strong_password(args.password):
        print(f"Error: {PASSWORD_RULES_MESSAGE}")
        sys.exit(1)

    # an explicit admin is being created, so skip the default seed
    os.environ.setdefault("SEED_ADMIN_ENABLED", "false")

    result = bootstrap_admin(args.email, args.password, args.dry_run)
    messages = {
        "created": "Admin user created",
        "promoted": "Existing user promoted to admin",
        "already_admin": "No changes needed - user is already an admin",
        "dry_run": "[DRY RUN] No changes made",
    }
    print(f"{messages[result['status']]}: {result['email']} (id: {result['user_id']})")


if __name__ == "__main__":
    main()
