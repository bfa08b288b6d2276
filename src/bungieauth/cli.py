"""Summary: Command-line interface for bungieauth.

Importance: Provides local entry points for serving the routes and inspecting sessions.
Alternatives: Only expose the library API.
"""

from __future__ import annotations

import argparse
import json
import logging
from datetime import datetime, timezone

from bungieauth.config import AuthConfig
from bungieauth.cookies import MemoryCookieStore
from bungieauth.errors import AuthorizationError, TransportError
from bungieauth.oauth import build_authorize_url, create_state_token, refresh_tokens
from bungieauth.session import SessionEngine


logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Summary: Build the CLI argument parser.

    Importance: Defines supported commands for local operation.
    Alternatives: Use a CLI framework like Typer or Click.
    """

    parser = argparse.ArgumentParser(description="bungieauth CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the authentication routes")
    serve.add_argument("--host", type=str, default=None)
    serve.add_argument("--port", type=int, default=None)

    subparsers.add_parser("authorize-url", help="Print a provider authorization URL")

    refresh = subparsers.add_parser("refresh", help="Exchange a refresh token")
    refresh.add_argument("refresh_token", type=str)

    inspect = subparsers.add_parser("inspect-cookies", help="Derive a session from cookie values")
    inspect.add_argument("cookies", nargs="+", help="name=value pairs")
    inspect.add_argument("--force", action="store_true")

    return parser


def run_cli(argv: list[str] | None = None) -> None:
    """Summary: Execute CLI commands based on arguments.

    Importance: Drives local debugging of the OAuth flow without a browser.
    Alternatives: Invoke the engine from a Python shell.
    """

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    parser = build_parser()
    args = parser.parse_args(argv)
    config = AuthConfig.from_env()

    if args.command == "serve":
        import uvicorn

        from bungieauth.api import create_app

        host = args.host or config.api_host
        port = args.port or config.api_port
        logger.info("Starting auth server on %s:%d", host, port)
        uvicorn.run(create_app(config), host=host, port=port)
        return

    if args.command == "authorize-url":
        print(build_authorize_url(config, create_state_token()))
        return

    if args.command == "refresh":
        try:
            tokens = refresh_tokens(config, args.refresh_token)
        except AuthorizationError as exc:
            status = "disabled" if exc.is_provider_outage else "expired"
            print(f"{status}: {exc}")
            raise SystemExit(1) from exc
        except TransportError as exc:
            print(f"error: {exc}")
            raise SystemExit(1) from exc
        issued_at = datetime.now(timezone.utc)
        print(f"membership_id: {tokens.membership_id}")
        print(f"issued_at: {issued_at.isoformat()}")
        print(f"expires_in: {tokens.expires_in}")
        print(f"refresh_expires_in: {tokens.refresh_expires_in}")
        return

    if args.command == "inspect-cookies":
        values = dict(pair.split("=", 1) for pair in args.cookies if "=" in pair)
        store = MemoryCookieStore(values)
        result = SessionEngine(config).derive_session(store, force=args.force)
        print(json.dumps(result.session.to_payload(), indent=2))
        print(f"message: {result.message}")
        return


if __name__ == "__main__":
    run_cli()
