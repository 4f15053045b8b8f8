#!/usr/bin/env python3
"""Create a Bookora account with a password.

Usage:
    USER_EMAIL=owner@example.com USER_PASSWORD=Sup3rSecret! python scripts/create_user.py --verified

    python scripts/create_user.py --email owner@example.com --password Sup3rSecret! \
        --role PROVIDER --role USER

Environment Variables:
    USER_EMAIL: Email for the new account
    USER_PASSWORD: Password for the new account
    DATABASE_URL: PostgreSQL connection string (memory store is used if unset)
    JWT_SECRET: signing secret (a throwaway one is generated if unset)
"""
from __future__ import annotations

import argparse
import os
import secrets
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def create_user(
    email: str,
    password: str,
    *,
    roles: list[str],
    first_name: str | None = None,
    verified: bool = False,
    dry_run: bool = False,
) -> dict:
    # imported late so the environment defaults below are in place first
    from bookora.service.passwords import validate_password_strength
    from bookora.service.runtime import get_runtime

    validate_password_strength(password)
    runtime = get_runtime()

    existing = runtime.store.get_user_by_email(email)
    if existing:
        print(f"User {email} already exists (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create user {email} with roles {', '.join(roles)}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = runtime.store.create_user(
        email,
        first_name=first_name,
        roles=tuple(roles),
        is_email_verified=verified,
    )
    runtime.store.save_password(user.id, runtime.hasher.hash(password))
    if not verified:
        runtime.email_verification.request(user)
    print(f"Created user {user.email} (id: {user.id})")
    return {"user_id": user.id, "email": user.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Create a Bookora user account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("USER_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("USER_PASSWORD"))
    parser.add_argument("--first-name", default=None)
    parser.add_argument(
        "--role",
        action="append",
        dest="roles",
        help="Role to grant; repeat for several (default: USER)",
    )
    parser.add_argument(
        "--verified",
        action="store_true",
        help="Mark the email as verified instead of sending a verification link",
    )
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or USER_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or USER_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = create_user(
            args.email,
            args.password,
            roles=[r.upper() for r in (args.roles or ["USER"])],
            first_name=args.first_name,
            verified=args.verified,
            dry_run=args.dry_run,
        )
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)
    if result["status"] == "created":
        print("\nAccount created.")


if __name__ == "__main__":
    main()
