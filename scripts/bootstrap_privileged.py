#!/usr/bin/env python3
"""Grant the privileged role to an existing registry user.

Privileged users may publish into every namespace without a membership.

Usage:
    # Using environment variables:
    PRIVILEGED_LOGIN=octocat python scripts/bootstrap_privileged.py

    # Or with command line args:
    python scripts/bootstrap_privileged.py --login octocat --provider github

Environment Variables:
    PRIVILEGED_LOGIN: Login name of the user to promote
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_privileged(login: str, provider: str = "github", dry_run: bool = False) -> dict:
    """Promote ``provider/login`` to the privileged role.

    Returns:
        dict with user_id, login, and status
    """
    # Import here to avoid loading config before env vars are set
    from vsxregistry.service.runtime import get_runtime
    from vsxregistry.storage.models import User

    runtime = get_runtime()

    user = runtime.store.get_user_by_login_name(provider, login)
    if user is None:
        print(f"User {provider}/{login} does not exist; log in once before promoting")
        return {"user_id": None, "login": login, "status": "missing"}

    if user.role == User.ROLE_PRIVILEGED:
        print(f"User {provider}/{login} is already privileged (id: {user.id})")
        return {"user_id": user.id, "login": login, "status": "already_privileged"}

    if dry_run:
        print(f"[DRY RUN] Would promote {provider}/{login} to privileged")
        return {"user_id": user.id, "login": login, "status": "dry_run"}

    with runtime.store.transaction():
        runtime.store.update_user(user.id, role=User.ROLE_PRIVILEGED)
    print(f"Promoted {provider}/{login} to privileged (id: {user.id})")
    return {"user_id": user.id, "login": login, "status": "promoted"}


def main():
    parser = argparse.ArgumentParser(
        description="Grant the privileged role to a registry user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--login",
        default=os.environ.get("PRIVILEGED_LOGIN"),
        help="Login name (or set PRIVILEGED_LOGIN env var)",
    )
    parser.add_argument("--provider", default="github", help="Identity provider")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.login:
        print("Error: --login or PRIVILEGED_LOGIN environment variable required")
        sys.exit(1)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_privileged(args.login, args.provider, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "missing":
        sys.exit(1)


if __name__ == "__main__":
    main()
