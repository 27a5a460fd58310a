#!/usr/bin/env python3
"""Bootstrap a user and a team owned by that user for initial setup.

Usage:
    # Using environment variables:
    OWNER_EMAIL=owner@example.com OWNER_PASSWORD=SecurePassword123! \
        python scripts/bootstrap_owner.py --team "Core Team"

    # Or with command line args:
    python scripts/bootstrap_owner.py --email owner@example.com \
        --password SecurePassword123! --team "Core Team"

Environment Variables:
    OWNER_EMAIL: Email for the owner account
    OWNER_PASSWORD: Password for the owner account
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


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_owner(
    email: str, password: str, team_name: str, dry_run: bool = False
) -> dict:
    """Create (or reuse) the user and create the team it owns.

    Returns:
        dict with user_id, team_id, email and status
        ('created', 'team_created', 'already_exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from teamgate.service.runtime import get_runtime
    from teamgate.service.teams import slugify

    runtime = get_runtime()
    email = email.strip().lower()
    slug = slugify(team_name)

    user = runtime.store.get_user_by_email(email)
    team = runtime.store.get_team_by_slug(slug)

    if user and team and team.owner_id == user.id:
        print(f"Team {slug} already owned by {email} (team id: {team.id})")
        return {
            "user_id": user.id,
            "team_id": team.id,
            "email": email,
            "status": "already_exists",
        }

    if dry_run:
        action = "reuse" if user else "create"
        print(f"[DRY RUN] Would {action} user {email} and create team '{team_name}'")
        return {
            "user_id": user.id if user else None,
            "team_id": None,
            "email": email,
            "status": "dry_run",
        }

    status = "team_created"
    if user is None:
        user, _ = await runtime.auth.register(email, password)
        status = "created"
        print(f"Created user: {email} (id: {user.id})")

    team = runtime.teams.create_team(team_name, user, slug=None if team else slug)
    print(f"Created team '{team.name}' (id: {team.id}, slug: {team.slug})")
    return {
        "user_id": user.id,
        "team_id": team.id,
        "email": email,
        "status": status,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a team owner for teamgate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("OWNER_EMAIL"),
        help="Owner email (or set OWNER_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("OWNER_PASSWORD"),
        help="Owner password (or set OWNER_PASSWORD env var)",
    )
    parser.add_argument("--team", required=True, help="Name of the team to create")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or OWNER_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or OWNER_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        import secrets

        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_owner(args.email, args.password, args.team, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] in ("created", "team_created"):
        print("\nTeam owner bootstrapped successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        print(f"  Team ID: {result['team_id']}")
    elif result["status"] == "already_exists":
        print("\nNo changes needed - the team already exists.")


if __name__ == "__main__":
    main()
