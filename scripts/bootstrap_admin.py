#!/usr/bin/env python3
"""Seed a SUPER_ADMIN principal for initial setup.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure#Pass1' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure#Pass1' \
        --first-name Ada --last-name Admin

Environment Variables:
    ADMIN_EMAIL: Email for the admin principal
    ADMIN_PASSWORD: Password (8-20 chars, upper, lower, digit, one of @#$%^&+=!)
    DATABASE_URL: PostgreSQL connection string (memory store is used when unset)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(
    email: str,
    password: str,
    *,
    first_name: str = "",
    last_name: str = "",
    dry_run: bool = False,
) -> dict:
    """Create the principal, or grant SUPER_ADMIN to an existing one.

    Returns:
        dict with user_id, email and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Imported late so the env defaults below apply before settings load
    from staffledger.service.runtime import get_runtime
    from staffledger.storage.models import ROLE_EMPLOYEE, ROLE_SUPER_ADMIN

    runtime = get_runtime()
    existing = runtime.store.find_with_roles(email)

    if existing:
        if ROLE_SUPER_ADMIN in existing.roles:
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.set_roles(existing.id, existing.roles | {ROLE_SUPER_ADMIN})
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    principal = runtime.store.create_principal(
        email,
        runtime.auth.hash_password(password),
        first_name=first_name,
        last_name=last_name,
        roles={ROLE_EMPLOYEE, ROLE_SUPER_ADMIN},
    )
    return {"user_id": principal.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a SUPER_ADMIN principal",
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
    parser.add_argument("--first-name", default="")
    parser.add_argument("--last-name", default="")
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

    from staffledger.api.schemas import PASSWORD_PATTERN

    if not PASSWORD_PATTERN.match(args.password):
        print("Error: Password must be 8-20 characters with an uppercase letter,")
        print("       a lowercase letter, a digit and one of @#$%^&+=!")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/staffledger-bootstrap"
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(
            args.email,
            args.password,
            first_name=args.first_name,
            last_name=args.last_name,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    status = result["status"]
    if status == "created":
        print(f"Created admin user: {result['email']} (id: {result['user_id']})")
    elif status == "promoted":
        print(f"Granted SUPER_ADMIN to existing user {result['email']}")
    elif status == "already_admin":
        print("No changes needed - user is already a SUPER_ADMIN.")
    else:
        print(f"[DRY RUN] Would bootstrap {result['email']}")


if __name__ == "__main__":
    main()
