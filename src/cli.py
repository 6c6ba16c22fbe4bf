"""
Administrative CLI for the client registry.

Usage:
    handradi-admin add <client_id> <api_key> <allowed_origin>
    handradi-admin list
    handradi-admin delete <client_id>
"""

import argparse
import logging
import sys
from typing import List, Optional

from src.adapters.database import ClientRegistry
from src.config import Settings
from src.domain.errors import ValidationError

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="handradi-admin", description="Manage file service clients"
    )
    parser.add_argument(
        "--database-url",
        help="SQLAlchemy URL of the registry (default: $HANDRADI_DATABASE_URL)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    add = commands.add_parser("add", help="Register a client")
    add.add_argument("client_id")
    add.add_argument("api_key")
    add.add_argument("allowed_origin", help="Single origin such as https://example.com, or *")

    commands.add_parser("list", help="List registered clients")

    delete = commands.add_parser("delete", help="Remove a client (stored files are kept)")
    delete.add_argument("client_id")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    database_url = args.database_url or Settings.from_env().database_url

    with ClientRegistry(database_url) as registry:
        if args.command == "add":
            try:
                registry.add(args.client_id, args.api_key, args.allowed_origin)
            except ValidationError as exc:
                print(f"Error: {exc.message}", file=sys.stderr)
                return 1
            print(f"Client added: {args.client_id}")

        elif args.command == "list":
            for client in registry.all():
                print(f"User: {client.client_id}\t{client.api_key}\t{client.allowed_origin}")

        elif args.command == "delete":
            if not registry.delete(args.client_id):
                print(f"Error: unknown client {args.client_id}", file=sys.stderr)
                return 1
            print(f"Client deleted: {args.client_id}")

    return 0


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING)
    sys.exit(main())
