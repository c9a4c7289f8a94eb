"""
bunq Session CLI
================

Drive the trust handshake and make authenticated calls from a shell.

Usage:
    python -m bunq_trust.scripts.bunq_session setup
    python -m bunq_trust.scripts.bunq_session refresh
    python -m bunq_trust.scripts.bunq_session status
    python -m bunq_trust.scripts.bunq_session logout
    python -m bunq_trust.scripts.bunq_session request GET /user
    python -m bunq_trust.scripts.bunq_session request POST /user/1/monetary-account --body '{"x": 1}' --sign

Credentials are read from and written to BUNQ_CREDENTIAL_PATH.
"""

import argparse
import asyncio
import json
import sys
from typing import List, Optional

from bunq_trust.config import settings
from bunq_trust.core.errors import BunqTrustError
from bunq_trust.core.structured_logging import setup_logging
from bunq_trust.services.credential_store import FileCredentialStore
from bunq_trust.services.session_orchestrator import SessionOrchestrator


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="bunq API trust handshake and session management")
    parser.add_argument(
        "--environment",
        choices=["sandbox", "production"],
        default=None,
        help=f"bunq environment (default: {settings.environment})",
    )

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("setup", help="Run the full handshake with a new keypair")
    sub.add_parser("refresh", help="Open a new session, setting up again when the API key changed")
    sub.add_parser("status", help="Show the stored credential state")
    sub.add_parser("logout", help="Remove all stored credentials")

    req = sub.add_parser("request", help="Make an authenticated API call")
    req.add_argument("method", choices=["GET", "POST", "PUT", "DELETE"], type=str.upper)
    req.add_argument("path", help="API path, e.g. /user")
    req.add_argument("--body", default=None, help="JSON request body")
    req.add_argument("--sign", action="store_true", help="Sign the request body")
    return parser


async def run(args: argparse.Namespace) -> int:
    store = FileCredentialStore(settings.credential_path, settings.secret_key)
    orchestrator = SessionOrchestrator(store, environment=args.environment)

    if args.command == "setup":
        credentials = await orchestrator.perform_full_setup()
        print(f"Setup complete. user_id={credentials.user_id}")
    elif args.command == "refresh":
        credentials = await orchestrator.ensure_session()
        print(f"Session refreshed. user_id={credentials.user_id}")
    elif args.command == "status":
        state = await orchestrator.current_state()
        stored = await orchestrator.repository.load()
        print(f"environment: {orchestrator.environment}")
        print(f"state:       {state}")
        if stored.user_id:
            print(f"user_id:     {stored.user_id}")
        if stored.device_id:
            print(f"device_id:   {stored.device_id}")
    elif args.command == "logout":
        await orchestrator.logout()
        print("Logged out. All stored credentials removed.")
    elif args.command == "request":
        body = json.loads(args.body) if args.body else None
        response = await orchestrator.request(args.method, args.path, body, sign=args.sign)
        print(json.dumps({"Response": response.items, "Pagination": response.pagination}, indent=2))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(log_dir=settings.log_dir, log_level=settings.log_level)

    try:
        return asyncio.run(run(args))
    except json.JSONDecodeError as e:
        print(f"Invalid --body JSON: {e}", file=sys.stderr)
        return 1
    except BunqTrustError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
