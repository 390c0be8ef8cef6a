"""Summary: Command-line interface for DM Focus.

Importance: Lets cron and operators run batch, sweep, and migration jobs without the HTTP layer.
Alternatives: Call the HTTP trigger endpoints from the scheduler.
"""

from __future__ import annotations

import argparse
import json
import logging
from typing import Any

from dmfocus.app import build_services
from dmfocus.config import AppConfig
from dmfocus.dispatch import run_classification
from dmfocus.errors import NotFoundError


def build_parser() -> argparse.ArgumentParser:
    """Summary: Build the CLI argument parser.

    Importance: Defines supported commands for local operation.
    Alternatives: Use a CLI framework like Typer or Click.
    """

    parser = argparse.ArgumentParser(description="DM Focus CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create database tables")

    create_user = subparsers.add_parser("create-user", help="Create a user")
    create_user.add_argument("name", type=str)
    create_user.add_argument("email", type=str)

    issue_token = subparsers.add_parser("issue-token", help="Issue a bearer token for a user")
    issue_token.add_argument("email", type=str)
    issue_token.add_argument("--label", type=str, default=None)

    classify = subparsers.add_parser("classify", help="Classify one message")
    classify.add_argument("message_id", type=int)

    subparsers.add_parser("classify-batch", help="Classify pending messages past the batch window")
    subparsers.add_parser("sweep-subscriptions", help="Advance subscription lifecycle states")
    subparsers.add_parser("cleanup-messages", help="Delete old read messages")
    subparsers.add_parser("migrate-tokens", help="Encrypt plaintext access tokens")

    status = subparsers.add_parser("subscription-status", help="Show a user's subscription state")
    status.add_argument("email", type=str)

    subparsers.add_parser("serve", help="Run the HTTP API with uvicorn")
    return parser


def run_cli(argv: list[str] | None = None) -> None:
    """Summary: Execute CLI commands based on arguments.

    Importance: Each scheduled job is one short-lived invocation.
    Alternatives: Keep a long-running scheduler process.
    """

    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    parser = build_parser()
    args = parser.parse_args(argv)
    config = AppConfig.from_env()

    if args.command == "serve":
        import uvicorn

        uvicorn.run("dmfocus.api:app", host=config.api_host, port=config.api_port)
        return

    services = build_services(config)

    if args.command == "init-db":
        print(f"Database ready at {config.db_path}.")
        return

    if args.command == "create-user":
        user_id = services.users.create_user(args.name, args.email)
        print(f"User {user_id} ({args.email}) ready.")
        return

    if args.command == "issue-token":
        user = services.users.get_user_by_email(args.email)
        if not user:
            parser.error(f"Unknown user: {args.email}")
        key_id, token = services.api_keys.create_api_key(user.id, args.label)
        print(f"Token {key_id}: {token}")
        return

    if args.command == "classify":
        if not services.store.get_message(args.message_id):
            raise NotFoundError(f"Message {args.message_id} not found")
        ok = run_classification(services.classification.classify_message, args.message_id)
        classification = services.store.get_classification(args.message_id)
        if ok and classification:
            print(f"{classification.intent}/{classification.priority}")
        else:
            print("Classification failed; message left pending.")
        return

    if args.command == "classify-batch":
        _print_json(services.classification.classify_pending_batch().to_dict())
        return

    if args.command == "sweep-subscriptions":
        _print_json(services.subscriptions.sweep().to_dict())
        return

    if args.command == "cleanup-messages":
        _print_json(services.retention.cleanup_read_messages().to_dict())
        return

    if args.command == "migrate-tokens":
        _print_json(services.tokens.migrate_plaintext_tokens().to_dict())
        return

    if args.command == "subscription-status":
        user = services.users.get_user_by_email(args.email)
        if not user:
            parser.error(f"Unknown user: {args.email}")
        _print_json(services.subscriptions.get_state(user.id).to_dict())
        return


def _print_json(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


if __name__ == "__main__":
    run_cli()
