#!/usr/bin/env python3
"""Inspect and drive the stored session from a terminal.

Usage:
    python scripts/session_cli.py status
    python scripts/session_cli.py login --email user@example.com --password ...
    python scripts/session_cli.py whoami
    python scripts/session_cli.py refresh
    python scripts/session_cli.py logout

Environment Variables:
    API_URL: Backend base URL (default http://localhost:5000)
    STORAGE_ROOT: Directory holding the stored session (default ~/.authsession)
    SESSION_EMAIL / SESSION_PASSWORD: Defaults for the login command
"""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def run_command(args: argparse.Namespace) -> int:
    # Import here so LOG_* env vars set below apply to logger configuration
    from authsession.service.errors import SessionError
    from authsession.service.runtime import build_runtime

    async with build_runtime() as runtime:
        session = runtime.session

        if args.command == "status":
            print(f"state: {session.state.value}")
            if session.user is not None:
                print(f"user: {session.user.username or session.user.email} (id: {session.user.id})")
            return 0

        if args.command == "whoami":
            if session.user is None:
                print("Not signed in")
                return 1
            if args.remote:
                try:
                    user = (await runtime.api.me()).raise_for_error().data
                except SessionError as exc:
                    print(f"Error: {exc.message} ({exc.error_code})")
                    return 1
            else:
                user = session.user.to_dict()
            print(json.dumps(user, indent=2, default=str))
            return 0

        if args.command == "login":
            try:
                user = await session.login(args.email, args.password)
            except SessionError as exc:
                print(f"Error: {exc.message}")
                return 1
            print(f"Signed in as {user.username or user.email} (id: {user.id})")
            return 0

        if args.command == "refresh":
            if await session.refresh_access_token():
                print("Access token refreshed")
                return 0
            print(f"Refresh failed; session state is {session.state.value}")
            return 1

        if args.command == "logout":
            await session.logout()
            print("Signed out")
            return 0

    return 2


def main():
    parser = argparse.ArgumentParser(
        description="Manage the stored authenticated session",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("status", help="Show the restored session state")
    whoami = subparsers.add_parser("whoami", help="Print the signed-in user record")
    whoami.add_argument(
        "--remote",
        action="store_true",
        help="Ask the backend instead of printing the stored record",
    )
    subparsers.add_parser("refresh", help="Exchange the refresh token for a new access token")
    subparsers.add_parser("logout", help="Sign out and clear stored credentials")
    login = subparsers.add_parser("login", help="Sign in with email and password")
    login.add_argument(
        "--email",
        default=os.environ.get("SESSION_EMAIL"),
        help="Account email (or set SESSION_EMAIL env var)",
    )
    login.add_argument(
        "--password",
        default=os.environ.get("SESSION_PASSWORD"),
        help="Account password (or set SESSION_PASSWORD env var)",
    )

    args = parser.parse_args()

    if args.command == "login" and (not args.email or not args.password):
        print("Error: --email and --password (or SESSION_EMAIL/SESSION_PASSWORD) required")
        sys.exit(1)

    # Keep command output readable unless the caller asked for JSON logs
    os.environ.setdefault("LOG_JSON", "false")
    os.environ.setdefault("LOG_LEVEL", "WARNING")

    try:
        sys.exit(asyncio.run(run_command(args)))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
