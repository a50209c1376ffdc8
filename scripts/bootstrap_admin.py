#!/usr/bin/env python3
"""Create the first admin account, or promote an existing user to admin.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=changeme1 ADMIN_NAME="Site Admin" \\
        python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password changeme1 --name "Site Admin"

Environment Variables:
    ADMIN_EMAIL, ADMIN_PASSWORD, ADMIN_NAME: account details
    DATABASE_URL: PostgreSQL connection string (in-memory store if unset)
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
    email: str, password: str, name: str, dry_run: bool = False
) -> dict:
    """Returns a dict with user_id, email and status."""
    # Imported late so the environment tweaks in main() apply
    from insightdash.service.runtime import get_runtime
    from insightdash.storage.models import Role

    runtime = get_runtime()
    existing_user = runtime.store.get_user_by_email(email)

    if existing_user:
        if existing_user.role == Role.ADMIN:
            print(f"User {email} already exists as admin (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to admin")
            return {"user_id": existing_user.id, "email": email, "status": "dry_run"}
        runtime.store.update_user(existing_user.id, role=Role.ADMIN)
        print(f"Promoted existing user {email} to admin (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    result = await runtime.auth.register(email, password, name, Role.ADMIN.value)
    runtime.audit.flush()
    print(f"Created admin user: {email} (id: {result.user.id})")
    return {"user_id": result.user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for InsightDash",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--name", default=os.environ.get("ADMIN_NAME", "Administrator"))
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

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from insightdash.service.errors import ServiceError

    try:
        asyncio.run(bootstrap_admin(args.email, args.password, args.name, args.dry_run))
    except ServiceError as e:
        print(f"Error: {e.message}")
        sys.exit(1)


if __name__ == "__main__":
    main()
