#!/usr/bin/env python3
"""Bootstrap an admin role and an admin user.

The admin role receives one permission for every guarded route, so the user
can manage roles, groups, permissions and users right away.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (memory store snapshot under
        SHARED_FS_ROOT if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

ADMIN_ROLE = "admin"


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def ensure_admin_role(runtime, dry_run: bool = False):
    """Create missing route permissions and an admin role holding all of them."""
    from gatehouse.service.authz import ROUTE_PERMISSIONS

    existing = {p.name: p for p in runtime.store.list_permissions()}
    permission_ids = []
    for route_key, (resource, method) in sorted(ROUTE_PERMISSIONS.items()):
        permission = existing.get(route_key)
        if permission is None:
            if dry_run:
                print(f"[DRY RUN] Would create permission {route_key}")
                continue
            permission = runtime.directory.create_permission(
                route_key, resource, method, f"{method} on {resource}"
            )
        permission_ids.append(permission.id)

    role = next((r for r in runtime.store.list_roles() if r.name == ADMIN_ROLE), None)
    if dry_run:
        print(f"[DRY RUN] Would grant {len(ROUTE_PERMISSIONS)} permissions to role {ADMIN_ROLE}")
        return role
    if role is None:
        role = runtime.directory.create_role(ADMIN_ROLE, "Full access to every guarded route")
    return runtime.authz.set_permissions(role.id, permission_ids)


def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create the admin user, or attach the admin role to an existing one.

    Returns:
        dict with user_id, email, role_id and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from gatehouse.service.runtime import get_runtime

    runtime = get_runtime()
    role = ensure_admin_role(runtime, dry_run=dry_run)
    existing_user = runtime.store.get_user_by_email(email)

    if dry_run:
        action = "promote existing user" if existing_user else "create admin user"
        print(f"[DRY RUN] Would {action}: {email}")
        return {
            "user_id": existing_user.id if existing_user else None,
            "email": email,
            "role_id": role.id if role else None,
            "status": "dry_run",
        }

    if existing_user:
        if role.id in existing_user.roles:
            print(f"User {email} already holds the admin role (id: {existing_user.id})")
            return {
                "user_id": existing_user.id,
                "email": email,
                "role_id": role.id,
                "status": "already_admin",
            }
        runtime.authz.set_roles("user", existing_user.id, existing_user.roles + [role.id])
        print(f"Promoted existing user {email} to admin (id: {existing_user.id})")
        return {
            "user_id": existing_user.id,
            "email": email,
            "role_id": role.id,
            "status": "promoted",
        }

    # registration may be switched off; the admin is written straight to the store
    digest = runtime.auth.hasher.hash(password)
    user = runtime.store.create_user(email, digest, roles=[role.id])
    print(f"Created admin user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "role_id": role.id, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for Gatehouse",
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

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using the memory store snapshot under SHARED_FS_ROOT (set DATABASE_URL for Postgres)")

    try:
        result = bootstrap_admin(args.email.strip().lower(), args.password, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        print(f"  Role ID: {result['role_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
