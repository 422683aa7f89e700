"""
Main entry point for the authpipe command-line client.

Operator commands for inspecting stored credentials, seeding or clearing
them, and issuing authenticated requests through the pipeline.
"""

import sys
import json
import asyncio
import argparse
import logging
from dataclasses import asdict
from typing import Any, Optional, List

from authpipe import __version__
from authpipe.api_client import AuthenticatedAPIClient, build_client
from authpipe.auth.token_storage import SecureCredentialStore
from authpipe.config import ClientConfiguration, parse_config_value
from authpipe.product_api import ProductAPI
from authpipe.shared.exceptions import AuthPipeError, RequestError, SessionExpiredError
from authpipe.shared.logging_config import AuditLogger, LogLevel, setup_logging, log_structured_error
from authpipe.shared.models import Credentials

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_REQUEST_ERROR = 1
EXIT_SESSION_EXPIRED = 2


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="authpipe",
        description="Authenticated API client with automatic token refresh",
        epilog="""
Examples:
  %(prog)s status                          # Show whether tokens are stored
  %(prog)s set-tokens ACCESS REFRESH       # Seed credentials after login
  %(prog)s request GET /profile            # Authenticated request
  %(prog)s request POST /items --data '{"name": "x"}'
  %(prog)s products --page 2 --limit 10    # List products
  %(prog)s products --search shoes --json  # Search, JSON output
  %(prog)s logout                          # Clear stored credentials
  %(prog)s config set server.url https://api.example.com
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    config_group = parser.add_argument_group('Configuration')
    config_group.add_argument("--config", type=str, metavar="FILE",
                              help="Path to configuration file")
    config_group.add_argument("--server-url", type=str, metavar="URL",
                              help="Override server URL")

    output_group = parser.add_argument_group('Output')
    output_group.add_argument("--json", action="store_true",
                              help="Output results in JSON format")
    output_group.add_argument("--debug", action="store_true",
                              help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    subparsers.add_parser("status", help="Show whether credentials are stored")

    set_tokens = subparsers.add_parser("set-tokens", help="Store an access/refresh token pair")
    set_tokens.add_argument("access_token", metavar="ACCESS")
    set_tokens.add_argument("refresh_token", metavar="REFRESH", nargs="?")

    subparsers.add_parser("logout", help="Clear stored credentials")

    request = subparsers.add_parser("request", help="Send an authenticated request")
    request.add_argument("method", metavar="METHOD", type=str.upper,
                         choices=["GET", "POST", "PUT", "PATCH", "DELETE"])
    request.add_argument("path", metavar="PATH")
    request.add_argument("--data", type=str, metavar="JSON", help="JSON request body")

    products = subparsers.add_parser("products", help="Query the product API")
    products_mode = products.add_mutually_exclusive_group()
    products_mode.add_argument("--search", type=str, metavar="QUERY", help="Search products")
    products_mode.add_argument("--id", type=str, metavar="ID", help="Get one product")
    products.add_argument("--page", type=int, default=1, metavar="N", help="Page number (default: 1)")
    products.add_argument("--limit", type=int, default=20, metavar="N", help="Page size (default: 20)")

    config_cmd = subparsers.add_parser("config", help="Show or change the configuration file")
    config_actions = config_cmd.add_subparsers(dest="config_action", metavar="ACTION")
    config_actions.required = True
    config_actions.add_parser("show", help="Print the effective configuration")
    config_set = config_actions.add_parser("set", help="Set a value and save the configuration file")
    config_set.add_argument("key", metavar="SECTION.KEY")
    config_set.add_argument("value", metavar="VALUE")

    args = parser.parse_args(argv)

    if args.command == "request" and args.data is not None:
        try:
            args.data = json.loads(args.data)
        except json.JSONDecodeError as e:
            parser.error(f"--data is not valid JSON: {e}")

    return args


def _print_result(args: argparse.Namespace, payload: Any, text: str) -> None:
    if args.json:
        print(json.dumps(payload, indent=2, default=str))
    else:
        print(text)


def handle_config_command(args: argparse.Namespace, config: ClientConfiguration) -> int:
    """Show the effective configuration or persist one changed value."""
    config_path = config.get_config_file_path()

    if args.config_action == "show":
        settings = config.get_all_config()
        lines = [f"Configuration file: {config_path}"]
        for section, values in settings.items():
            lines.append(f"[{section}]")
            lines.extend(f"  {key} = {value}" for key, value in values.items())
        _print_result(args, {'file': config_path, 'config': settings}, "\n".join(lines))
        return EXIT_OK

    config.set_config(args.key, parse_config_value(args.value))
    config.save_configuration()
    _print_result(args, {'saved': config_path, 'key': args.key}, f"✓ {args.key} saved to {config_path}")
    return EXIT_OK


def handle_status_command(
args: argparse.Namespace, store: SecureCredentialStore) -> int:
    """Show stored credential state; tokens themselves are never printed."""
    credentials = store.get()
    expires_at = credentials.access_expires_at
    status = {
        'has_access_token': credentials.access_token is not None,
        'has_refresh_token': credentials.refresh_token is not None,
        'access_expires_at': expires_at.isoformat() if expires_at else None,
        'backend': 'keyring' if store.keyring_available else str(store.storage_path),
    }

    if credentials.is_empty:
        text = "✗ Not logged in (no credentials stored)"
    else:
        text = "✓ Credentials stored"
        text += f"\n  Access token:  {'present' if status['has_access_token'] else 'missing'}"
        text += f"\n  Refresh token: {'present' if status['has_refresh_token'] else 'missing'}"
        if expires_at:
            text += f"\n  Expires at:    {status['access_expires_at']}"
    text += f"\n  Storage:       {status['backend']}"

    _print_result(args, status, text)
    return EXIT_OK


def handle_set_tokens_command(args: argparse.Namespace, store: SecureCredentialStore) -> int:
    store.set(Credentials(access_token=args.access_token, refresh_token=args.refresh_token))
    _print_result(args, {'stored': True}, "✓ Credentials stored")
    return EXIT_OK


def handle_logout_command(args: argparse.Namespace, client: AuthenticatedAPIClient) -> int:
    client.failure_router.trigger_logout()
    _print_result(args, {'logged_out': True}, "✓ Logged out")
    return EXIT_OK


async def handle_request_command(args: argparse.Namespace, client: AuthenticatedAPIClient) -> int:
    response = await client.request(args.method, args.path, data=args.data)
    payload = response.data if response.data is not None else response.text
    if response.data is None and not response.text and response.content:
        content_type = response.headers.get('Content-Type', 'binary data')
        payload = f"<{len(response.content)} bytes of {content_type}>"
    if args.json or not isinstance(payload, str):
        print(json.dumps(payload, indent=2, default=str))
    else:
        print(payload)
    return EXIT_OK


async def handle_products_command(args: argparse.Namespace, client: AuthenticatedAPIClient) -> int:
    api = ProductAPI(client)

    if args.id:
        product = await api.get_product(args.id)
        _print_result(args, asdict(product), f"{product.id}  {product.name}  {product.price:.2f}")
        return EXIT_OK

    if args.search:
        listing = await api.search_products(args.search)
    else:
        listing = await api.get_products(page=args.page, limit=args.limit)

    lines = [f"{p.id}  {p.name}  {p.price:.2f}" for p in listing.products]
    lines.append(f"-- page {listing.page}, {len(listing.products)} of {listing.total} products")
    payload = {
        'products': [asdict(p) for p in listing.products],
        'total': listing.total,
        'page': listing.page,
        'limit': listing.limit,
    }
    _print_result(args, payload, "\n".join(lines))
    return EXIT_OK


async def run_client_command(args: argparse.Namespace, client: AuthenticatedAPIClient) -> int:
    """Run a command that talks to the server, mapping failures to exit codes."""
    async with client:
        try:
            if args.command == "request":
                return await handle_request_command(args, client)
            return await handle_products_command(args, client)
        except SessionExpiredError as e:
            print(f"✗ {e.message}. Please log in again.", file=sys.stderr)
            return EXIT_SESSION_EXPIRED
        except RequestError as e:
            print(f"✗ {e.message}", file=sys.stderr)
            return EXIT_REQUEST_ERROR
        finally:
            await client.failure_router.drain()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_arguments(argv)

    try:
        config = ClientConfiguration(args.config)
        if args.server_url:
            config.set_override('server.url', args.server_url.rstrip('/'))

        log_level = LogLevel.DEBUG if args.debug else config.get_log_level()
        setup_logging(
            log_level=log_level,
            log_format=config.get_log_format(),
            log_file=config.get_log_file(),
            max_file_size=config.get_log_max_size(),
            backup_count=config.get_log_backup_count()
        )

        if args.command == "config":
            return handle_config_command(args, config)

        client = build_client(config)

        if args.command == "status":
            return handle_status_command(args, client.store)
        if args.command == "set-tokens":
            return handle_set_tokens_command(args, client.store)
        if args.command == "logout":
            return handle_logout_command(args, client)

        return asyncio.run(run_client_command(args, client))

    except AuthPipeError as e:
        log_structured_error(logger, e)
        AuditLogger().log_error(e)
        print(f"✗ {e.message}", file=sys.stderr)
        return EXIT_REQUEST_ERROR
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
