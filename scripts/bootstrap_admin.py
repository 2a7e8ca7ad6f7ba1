#!/usr/bin/env python3
"""Bootstrap an admin identity for initial setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_USERNAME=admin ADMIN_PASSWORD=SecurePass123 python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --username admin --password SecurePass123

Environment Variables:
    ADMIN_EMAIL: Email for the admin identity
    ADMIN_USERNAME: Username for the admin identity (defaults to the email local part)
    ADMIN_PASSWORD: Password (at least 8 characters with upper, lower and a digit)
    DATABASE_URL: PostgreSQL connection string (optional, uses the file-backed memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_admin_input(email: str, username: Optional[str], password: str):
    """Run the admin credentials through the registration rules.

    The username defaults to the email local part. Raises ValueError listing
    every problem found.
    """
    from pydantic import ValidationError

    from storefront_auth.api.schemas import RegisterRequest
    from storefront_auth.storage.common import normalize_email

    if not username:
        username = normalize_email(email).split("@", 1)[0]
    try:
        return RegisterRequest(email=email, username=username, password=password)
    except ValidationError as exc:
        problems = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
        ]
        raise ValueError("; ".join(problems)) from None


def bootstrap_admin(
    email: str, username: Optional[str], password: str, dry_run: bool = False
) -> dict:
    """Create or promote an admin identity.

    Returns:
        dict with identity_id, email, and status
    """
    # Import here to avoid loading config before env vars are set
    from storefront_auth.service.runtime import get_runtime

    req = validate_admin_input(email, username, password)
    email, username, password = req.email, req.username, req.password
    runtime = get_runtime()
    store = runtime.store

    existing = store.get_identity_by_email(email)
    if existing:
        if existing.is_admin:
            print(f"Identity {email} already exists as admin (id: {existing.id})")
            return {"identity_id": existing.id, "email": email, "status": "already_admin"}

        if dry_run:
            print(f"[DRY RUN] Would promote existing identity {email} to admin")
            return {"identity_id": existing.id, "email": email, "status": "dry_run"}

        store.set_admin(existing.id, True)
        print(f"Promoted existing identity {email} to admin (id: {existing.id})")
        return {"identity_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin identity: {email}")
        return {"identity_id": None, "email": email, "status": "dry_run"}

    password_hash, algo = runtime.auth.passwords.hash(password)
    identity = store.create_identity(
        email, username, password_hash, password_algo=algo, is_admin=True
    )
    store.mark_email_verified(identity.id)
    print(f"Created admin identity: {email} (id: {identity.id})")
    return {"identity_id": identity.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin identity for the storefront",
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
        help="Admin username (or set ADMIN_USERNAME env var)",
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

    try:
        req = validate_admin_input(args.email, args.username, args.password)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using file-backed memory store (set DATABASE_URL for Postgres)")

    try:
        result = bootstrap_admin(req.email, req.username, req.password, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin identity created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Identity ID: {result['identity_id']}")
    elif result["status"] == "promoted":
        print("\nExisting identity promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - identity is already an admin.")


if __name__ == "__main__":
    main()
