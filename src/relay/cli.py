"""Command line entry point for authorizing against a remote MCP server.

Runs the same credential and coordination logic the proxy uses, so it can be
started from several terminals at once: one opens the browser, the others
wait and reuse its tokens. Diagnostics and prompts go to stderr.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import ValidationError

from relay.auth.client.models.errors import CoordinationTimeoutError, OAuth2Error
from relay.auth.client.models.registration import ClientInformation
from relay.auth.client.oauth_client import RemoteAuthenticator
from relay.auth.client.primitives.storage import CredentialStore
from relay.auth.client.services.coordination import (
    DEFAULT_AUTH_TIMEOUT,
    InstanceCoordinator,
)
from relay.auth.client.services.provider import (
    OAuthClientProvider,
    OAuthProviderOptions,
)

DEFAULT_CALLBACK_PORT = 3334
EXIT_FAILURE = 1
EXIT_TEMPFAIL = 75  # sysexits.h EX_TEMPFAIL, retry later
EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="relay-auth",
        description="Authorize against a remote MCP server and store the tokens.",
    )
    parser.add_argument("server_url", help="URL of the remote MCP server")
    parser.add_argument(
        "callback_port",
        nargs="?",
        type=int,
        default=DEFAULT_CALLBACK_PORT,
        help=f"Local port for the OAuth redirect (default {DEFAULT_CALLBACK_PORT})",
    )
    parser.add_argument("--host", default="localhost", help="Redirect host")
    parser.add_argument("--resource", help="Resource indicator to authorize for")
    parser.add_argument(
        "--header",
        action="append",
        default=[],
        metavar="NAME:VALUE",
        help="Custom header sent to the server (repeatable)",
    )
    parser.add_argument(
        "--static-oauth-client-metadata",
        metavar="JSON|@FILE",
        help="Client metadata overrides used for dynamic registration",
    )
    parser.add_argument(
        "--static-oauth-client-info",
        metavar="JSON|@FILE",
        help="Pre-registered client information, skips dynamic registration",
    )
    parser.add_argument(
        "--auth-timeout",
        type=float,
        default=DEFAULT_AUTH_TIMEOUT,
        help="Seconds to wait for the browser round trip",
    )
    parser.add_argument("--config-dir", help="Credential directory override")
    parser.add_argument(
        "--logout", action="store_true", help="Delete stored credentials and exit"
    )
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    return parser


def _load_json_argument(value: str | None, flag: str) -> dict[str, Any] | None:
    if value is None:
        return None
    try:
        if value.startswith("@"):
            value = Path(value[1:]).expanduser().read_text()
        data = json.loads(value)
    except (OSError, json.JSONDecodeError) as e:
        raise SystemExit(f"{flag}: {e}")
    if not isinstance(data, dict):
        raise SystemExit(f"{flag}: expected a JSON object")
    return data


def _parse_headers(values: list[str]) -> dict[str, str]:
    headers = {}
    for value in values:
        name, sep, header_value = value.partition(":")
        if not sep or not name.strip():
            raise SystemExit(f"--header: expected NAME:VALUE, got {value!r}")
        headers[name.strip()] = header_value.strip()
    return headers


def build_authenticator(args: argparse.Namespace) -> RemoteAuthenticator:
    static_info = _load_json_argument(
        args.static_oauth_client_info, "--static-oauth-client-info"
    )
    try:
        static_client_info = (
            ClientInformation.model_validate(static_info) if static_info else None
        )
    except ValidationError as e:
        raise SystemExit(f"--static-oauth-client-info: {e}")

    options = OAuthProviderOptions(
        server_url=args.server_url,
        callback_port=args.callback_port,
        host=args.host,
        static_client_metadata=_load_json_argument(
            args.static_oauth_client_metadata, "--static-oauth-client-metadata"
        ),
        static_client_info=static_client_info,
        authorize_resource=args.resource,
        headers=_parse_headers(args.header),
    )
    store = CredentialStore(args.config_dir)
    provider = OAuthClientProvider(options, store=store)
    coordinator = InstanceCoordinator(store)
    return RemoteAuthenticator(provider, coordinator, auth_timeout=args.auth_timeout)


async def run(args: argparse.Namespace) -> int:
    authenticator = build_authenticator(args)
    try:
        if args.logout:
            await authenticator.logout()
            print(f"Removed stored credentials for {args.server_url}", file=sys.stderr)
            return 0

        tokens = await authenticator.authenticate()
        print(
            f"Authorized with {args.server_url} "
            f"(refresh token: {'yes' if tokens.can_refresh() else 'no'}, "
            f"expires_in: {tokens.expires_in})",
            file=sys.stderr,
        )
        return 0
    finally:
        await authenticator.close()


def _exit_on_sigterm(signum, frame) -> None:
    raise SystemExit(128 + signum)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s [%(process)d] %(name)s: %(message)s",
    )
    load_dotenv()
    # Unwinds through the coordinator's context managers so leases are released.
    signal.signal(signal.SIGTERM, _exit_on_sigterm)

    try:
        return asyncio.run(run(args))
    except CoordinationTimeoutError as e:
        print(f"Error: {e}. Try again once the other process finishes.", file=sys.stderr)
        return EXIT_TEMPFAIL
    except OAuth2Error as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
