#!/usr/bin/env python3
"""Operator commands for accounts and refresh tokens.

Usage:
    python scripts/manage_users.py create --email ops@example.com --password Passw0rd1
    python scripts/manage_users.py deactivate --email ops@example.com
    python scripts/manage_users.py activate --email ops@example.com
    python scripts/manage_users.py purge-tokens

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
    JWT_SECRET: Signing secret shared with the running service
    STATE_ROOT: Directory for the memory store snapshot and generated secrets

Without DATABASE_URL the commands edit the memory store snapshot under
STATE_ROOT. A running server keeps its own copy in memory and overwrites the
snapshot on its next write, so stop the server before changing accounts in
that mode.
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _runtime():
    # Import here to avoid loading config before env vars are set
    from tessera.service.runtime import get_runtime

    return get_runtime()


def create_user(
    email: str,
    password: str,
    *,
    username: str | None = None,
    first_name: str | None = None,
    last_name: str | None = None,
) -> dict:
    runtime = _runtime()
    registration = runtime.sessions.register(
        email,
        password,
        username=username,
        first_name=first_name,
        last_name=last_name,
    )
    return {"user_id": registration.user_id, "email": registration.email, "status": "created"}


def set_active(email: str, is_active: bool) -> dict:
    from tessera.service.errors import NotFoundError

    runtime = _runtime()
    user = runtime.store.get_user_by_email(email)
    if user is None:
        raise NotFoundError("User not found", detail={"email": email})
    profile = runtime.sessions.set_active(user.id, is_active)
    result = {
        "user_id": profile.id,
        "email": profile.email,
        "status": "activated" if is_active else "deactivated",
    }
    if not is_active:
        # A deactivated account keeps no live refresh tokens
        result["revoked"] = runtime.sessions.logout(user.id)
    return result


def purge_tokens() -> dict:
    runtime = _runtime()
    return {"purged": runtime.sessions.purge_expired_tokens(), "status": "purged"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Manage tessera accounts and refresh tokens",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="Register a new account")
    create.add_argument("--email", default=os.environ.get("USER_EMAIL"), required=False)
    create.add_argument("--password", default=os.environ.get("USER_PASSWORD"), required=False)
    create.add_argument("--username")
    create.add_argument("--first-name", dest="first_name")
    create.add_argument("--last-name", dest="last_name")

    for name, help_text in (
        ("deactivate", "Deactivate an account and revoke its refresh tokens"),
        ("activate", "Re-activate an account"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("--email", required=True)

    sub.add_parser("purge-tokens", help="Delete expired refresh tokens")
    return parser


def main(argv: list[str] | None = None) -> int:
    from tessera.service.errors import ServiceError

    args = build_parser().parse_args(argv)

    if not os.environ.get("DATABASE_URL"):
        os.environ.setdefault("USE_MEMORY_STORE", "true")
        print(
            "Note: DATABASE_URL not set; editing the memory store snapshot. "
            "Stop any running server first or its next write will discard these changes.",
            file=sys.stderr,
        )

    try:
        if args.command == "create":
            if not args.email or not args.password:
                print("Error: --email and --password (or USER_EMAIL/USER_PASSWORD) required")
                return 1
            result = create_user(
                args.email,
                args.password,
                username=args.username,
                first_name=args.first_name,
                last_name=args.last_name,
            )
        elif args.command == "deactivate":
            result = set_active(args.email, False)
        elif args.command == "activate":
            result = set_active(args.email, True)
        else:
            result = purge_tokens()
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        return 1

    for key, value in result.items():
        print(f"  {key}: {value}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
