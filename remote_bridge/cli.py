"""
CLI entrypoint for Remote Bridge.

Usage:
    remote-bridge                          # Auto-discover project context
    remote-bridge --port 9000 --verbose    # Explicit port, debug logging
    remote-bridge --print-config           # Print resolved config
"""

import argparse
import logging
import sys
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

from . import __version__
from .config import Config, apply_env_overrides, load_config
from .discovery import discover_project_config
from .errors import ConfigError
from .server import create_app

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="remote-bridge",
        description="Relay a terminal AI assistant session to a mobile companion app",
    )

    parser.add_argument(
        "--config", "-c",
        type=Path,
        help="Path to config file (default: auto-discover)",
    )
    parser.add_argument(
        "--port", "-p",
        type=int,
        help="Server port (default: 3000)",
    )
    parser.add_argument(
        "--host",
        help="Server host (default: 0.0.0.0)",
    )
    parser.add_argument(
        "--token", "-t",
        help="Auth token (implies --require-token, auto-generated if not set)",
    )
    parser.add_argument(
        "--require-token",
        action="store_true",
        help="Enable token authentication",
    )
    parser.add_argument(
        "--agent-type",
        help="Agent driver to use: claude, generic (default: claude)",
    )
    parser.add_argument(
        "--cwd",
        type=Path,
        help="Working directory for new sessions (default: project root)",
    )
    parser.add_argument(
        "--no-discovery",
        action="store_true",
        help="Disable auto-discovery of project context",
    )
    parser.add_argument(
        "--no-auto-launch",
        action="store_true",
        help="Do not type the assistant's start command into new sessions",
    )
    parser.add_argument(
        "--print-config",
        action="store_true",
        help="Print resolved config as YAML and exit",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Verbose logging",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"remote-bridge {__version__}",
    )

    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> Config:
    """Resolve config: file or discovery, then environment, then CLI flags."""
    if args.config:
        config = load_config(args.config)
    elif args.no_discovery:
        config = Config()
    else:
        config = discover_project_config()

    apply_env_overrides(config)

    if args.port:
        config.port = args.port
    if args.host:
        config.host = args.host
    if args.token:
        config.token = args.token
        config.no_auth = False  # --token implies auth required
    if args.require_token:
        config.no_auth = False
    if args.agent_type:
        config.agent_type = args.agent_type
    if args.cwd:
        config.cwd = args.cwd
    if args.no_auto_launch:
        config.auto_launch = False
    if args.verbose:
        config.log_level = "debug"

    config.validate()
    return config


def main(argv=None) -> int:
    """Main entrypoint."""
    # Load environment variables from .env file
    load_dotenv()

    args = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s:%(name)s:%(message)s",
    )

    try:
        config = build_config(args)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    if args.print_config:
        print(config.to_yaml())
        return 0

    level = config.logging_level()
    logging.getLogger().setLevel(level)

    app = create_app(config)

    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level=level.lower(),
    )

    return 0


if __name__ == "__main__":
    sys.exit(main())
