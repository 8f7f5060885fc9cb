#!/usr/bin/env python3
"""
DoorPro auth -- operator command line.

Usage:
  python main.py bootstrap-admin --username admin --email admin@example.com --full-name "Admin User"
  python main.py sweep
  python main.py revoke-user 42
  python main.py token-count

bootstrap-admin reads the password from the DOORPRO_ADMIN_PASSWORD environment
variable when set, otherwise prompts for it (never from argv, where it would
land in shell history and the process table).

All commands use the same configuration as the API server (SECRET_KEY,
AUTH_DB_URL, TOKEN_BACKEND, ...). See core/config.py.
"""

import argparse
import getpass
import logging
import os
import sys

from auth.errors import AuthError
from auth.service import AuthService, build_auth_service
from core.config import get_settings

logger = logging.getLogger("doorpro.cli")


def _read_password() -> str:
    password = os.environ.get("DOORPRO_ADMIN_PASSWORD")
    if password:
        return password
    first = getpass.getpass("Admin password: ")
    second = getpass.getpass("Repeat password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        sys.exit(2)
    return first


def _cmd_bootstrap_admin(service: AuthService, args: argparse.Namespace) -> int:
    identity = service.bootstrap_admin(args.username, args.email, _read_password(), args.full_name)
    print(f"  Created admin '{identity.username}' (id={identity.id}).")
    return 0


def _cmd_sweep(service: AuthService, args: argparse.Namespace) -> int:
    removed = service.sweep()
    print(f"  Sweep removed {removed} token record(s).")
    return 0


def _cmd_revoke_user(service: AuthService, args: argparse.Namespace) -> int:
    revoked = service.revoke_user(args.user_id)
    print(f"  Revoked {revoked} token(s) for user {args.user_id}.")
    return 0


def _cmd_token_count(service: AuthService, args: argparse.Namespace) -> int:
    print(f"  {service.token_count()} token record(s) stored.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="DoorPro auth maintenance commands.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("bootstrap-admin", help="Create the first admin account.")
    p.add_argument("--username", required=True)
    p.add_argument("--email", required=True)
    p.add_argument("--full-name", required=True, dest="full_name")
    p.set_defaults(handler=_cmd_bootstrap_admin)

    p = sub.add_parser("sweep", help="Purge revoked and long-expired tokens now.")
    p.set_defaults(handler=_cmd_sweep)

    p = sub.add_parser("revoke-user", help="Revoke every token a user holds.")
    p.add_argument("user_id", type=int)
    p.set_defaults(handler=_cmd_revoke_user)

    p = sub.add_parser("token-count", help="Print the number of stored token records.")
    p.set_defaults(handler=_cmd_token_count)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    service = build_auth_service(get_settings())
    try:
        return args.handler(service, args)
    except AuthError as exc:
        logger.debug("Command failed: %s", exc)
        print(f"  [!] {exc.public_message}")
        return 1
    finally:
        service.close()


if __name__ == "__main__":
    sys.exit(main())
