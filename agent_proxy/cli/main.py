"""CLI: agent-proxy serve, check-store, config validate."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time

from dotenv import find_dotenv, load_dotenv

from ..config import load_config, validate_config
from ..types import ConfigError, ProxyError


def _mask(value: str) -> str:
    if not value:
        return "(unset)"
    return "set" if len(value) < 12 else f"{value[:4]}…{value[-4:]}"


def _load_or_exit(args):
    try:
        return load_config(args.config)
    except (ConfigError, FileNotFoundError) as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)


def cmd_serve(args):
    """Start the HTTP proxy."""
    import uvicorn

    from ..proxy import create_app

    config = _load_or_exit(args)
    errors = validate_config(config)
    if errors:
        print("Config validation errors:", file=sys.stderr)
        for err in errors:
            print(f"  - {err}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Suppress CancelledError tracebacks when uvicorn force-cancels
    # in-flight stream reads on shutdown.
    class _SuppressCancelled(logging.Filter):
        def filter(self, record: logging.LogRecord) -> bool:
            if record.exc_info:
                exc_type = record.exc_info[0]
                if exc_type is asyncio.CancelledError:
                    return False
            return True

    logging.getLogger("uvicorn.error").addFilter(_SuppressCancelled())

    host = args.host or config.server.host
    port = args.port or config.server.port
    app = create_app(config)
    print(f"agent-session-proxy on {host}:{port} -> {config.agent_engine.endpoint}")
    uvicorn.run(
        app, host=host, port=port, log_level=config.log_level.lower(),
        timeout_graceful_shutdown=2,
    )


async def _check_store(store) -> None:
    test_user = f"test-user-{int(time.time() * 1000)}"
    test_session = f"session-{int(time.time() * 1000)}"
    try:
        await store.ping()
        print("✓ Session store connection successful\n")

        print("Testing session storage...")
        await store.put(test_user, test_session)
        print(f"✓ Session stored: {test_user} -> {test_session}")

        retrieved = await store.get(test_user)
        print(f"✓ Session retrieved: {retrieved}")
        if retrieved != test_session:
            raise ProxyError("Retrieved session does not match the stored one")

        ttl = await store.ttl(test_user)
        minutes = round(ttl / 60) if ttl is not None else "?"
        print(f"✓ Session TTL: {ttl} seconds ({minutes} minutes)\n")

        await store.delete(test_user)
        print("✓ Test session cleaned up\n")
    finally:
        await store.close()


def cmd_check_store(args):
    """Round-trip a throwaway session through the configured session store."""
    from ..proxy import build_session_store

    config = _load_or_exit(args)
    print(f"Testing {config.session.backend} session store...\n")
    try:
        store = build_session_store(config)
        asyncio.run(_check_store(store))
    except ProxyError as e:
        detail = f" ({e.details})" if e.details else ""
        print(f"✗ Test failed: {e.message}{detail}", file=sys.stderr)
        sys.exit(1)
    print("All tests passed!")


def cmd_config_validate(args):
    """Validate config file."""
    config = _load_or_exit(args)

    errors = validate_config(config)
    if errors:
        print("Config validation errors:")
        for err in errors:
            print(f"  - {err}")
        sys.exit(1)
    else:
        creds = config.credentials
        print("Config is valid.")
        print(f"  Endpoint: {config.agent_engine.endpoint}")
        print(f"  Session backend: {config.session.backend} (ttl {config.session.ttl_seconds}s)")
        if config.session.backend == "redis":
            print(f"  Redis URL: {_mask(config.session.redis_url)}")
        if creds.static_token:
            print("  Credentials: static token")
        else:
            source = "base64 key" if creds.service_account_key_base64 else creds.service_account_file
            print(f"  Credentials: service account ({source})")
            print(f"  Token cache: {'on' if creds.token_cache else 'off'}")
        print(f"  Stream timeout: {config.agent_engine.stream_timeout_seconds:g}s")


def main(argv: list[str] | None = None):
    load_dotenv(find_dotenv(usecwd=True))

    parser = argparse.ArgumentParser(
        prog="agent-proxy",
        description="Session-aware proxy for a remote conversational agent",
    )
    parser.add_argument("--config", "-c", help="Path to config file")

    subparsers = parser.add_subparsers(dest="command")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the HTTP proxy")
    serve_parser.add_argument("--port", "-p", type=int, default=None)
    serve_parser.add_argument("--host", default=None)

    # check-store
    subparsers.add_parser("check-store", help="Round-trip a test session through the session store")

    # config validate
    config_parser = subparsers.add_parser("config", help="Config operations")
    config_sub = config_parser.add_subparsers(dest="config_command")
    config_sub.add_parser("validate", help="Validate config file")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "check-store":
        cmd_check_store(args)
    elif args.command == "config":
        if args.config_command == "validate":
            cmd_config_validate(args)
        else:
            print("Usage: agent-proxy config validate")
            sys.exit(1)


if __name__ == "__main__":
    main()
