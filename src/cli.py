#!/usr/bin/env python3
"""CLI entry point for api-template.

Runs the web service until SIGTERM/SIGINT; SIGHUP reloads the config file
and restarts the service in-process.

Utility flags exit immediately:
- --about: program information
- --crypt VALUE: encrypt a value for use in the config file
- --token USER: issue a bearer token with the configured jwt secret
"""

import argparse
import logging
import sys

import yaml

from common import close_logging, init_logging
from config import DEFAULT_CONFIG_FILE, LOG_LEVELS, ConfigError, apply_overrides, load_config
from credentials import CredentialError, encrypt
from server.app import App, StartupError
from server.tokens import create_token, token_ttl
from server.version import MODULE, VERSION

logger = logging.getLogger(__name__)


def about() -> dict:
    """Program information printed by --about."""
    return {
        "name": MODULE,
        "version": VERSION,
        "description": "HTTPS API service with graceful restart",
        "signals": {
            "SIGHUP": "reload config and restart",
            "SIGTERM": "graceful shutdown",
            "SIGINT": "immediate shutdown",
        },
        "endpoints": ["/api/version", "/api/health", "/api/monitoring"],
    }


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=MODULE,
        description="HTTPS API service with graceful restart on SIGHUP",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"{MODULE} {VERSION}",
    )
    parser.add_argument(
        "--about",
        action="store_true",
        help="Print program information and exit",
    )
    parser.add_argument(
        "--config",
        default=str(DEFAULT_CONFIG_FILE),
        help="Path to the config file",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging (same as --logLevel debug)",
    )
    parser.add_argument(
        "--logLevel",
        dest="log_level",
        choices=LOG_LEVELS,
        help="Log level, overrides the config file",
    )
    parser.add_argument(
        "--logDestination",
        dest="log_destination",
        help="stdout | stderr | null | /path/to/logfile, overrides the config file",
    )
    parser.add_argument(
        "--crypt",
        metavar="VALUE",
        help="Encrypt VALUE for use in the config file and exit",
    )
    parser.add_argument(
        "--token",
        metavar="USER",
        help="Issue a bearer token for USER and exit",
    )
    return parser


def _load(args):
    """Load the config and apply command line overrides.

    Raises:
        ConfigError: If the config cannot be loaded
    """
    config = load_config(args.config)
    log_level = "debug" if args.debug else (args.log_level or "")
    return apply_overrides(config, log_level, args.log_destination or "")


def issue_token(args) -> int:
    """Print a bearer token for args.token."""
    try:
        config = _load(args)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    webserver = config.webserver
    if not webserver.jwt_secret or not webserver.jwt_id:
        print("Error: jwtSecret and jwtID must be configured to issue tokens", file=sys.stderr)
        return 1

    print(create_token(
        args.token,
        webserver.jwt_secret.value(),
        webserver.jwt_id,
        MODULE,
        ttl=token_ttl(config.is_dev_env()),
    ))
    return 0


def serve(args) -> int:
    """Run the service; restart on SIGHUP until shutdown."""
    try:
        config = _load(args)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    generation = 0
    while True:
        generation += 1
        try:
            handler = init_logging(config.log_destination, config.log_level)
        except OSError as e:
            print(f"Error: cannot open log destination {config.log_destination}: {e}", file=sys.stderr)
            return 1

        try:
            app = App(config, generation=generation)
            try:
                app.run()
            except StartupError as e:
                logger.error("Failed to start %s: %s", MODULE, e)
                return 1

            if not app.wait():
                logger.info("%s shutdown complete", MODULE)
                return 0

            logger.info("Reloading config %s", args.config)
            try:
                config = _load(args)
            except ConfigError as e:
                logger.error("Failed to reload config: %s", e)
                return 1
        finally:
            close_logging(handler)


def main(argv=None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    if args.about:
        print(yaml.safe_dump(about(), sort_keys=False), end="")
        return 0

    if args.crypt is not None:
        try:
            print(encrypt(args.crypt))
        except CredentialError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        return 0

    if args.token:
        return issue_token(args)

    return serve(args)


if __name__ == "__main__":
    sys.exit(main())
