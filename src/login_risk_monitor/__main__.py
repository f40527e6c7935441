"""Command line entry point for the login risk monitor."""

import argparse
import asyncio
import json
import logging
import sys
from enum import Enum
from pathlib import Path

from .core.config import Config
from .core.events import LoginAttempt
from .core.store import MemoryStore
from .rules.registry import RiskRuleRegistry
from .service import LoginSecurityService, build_service

logger = logging.getLogger(__name__)


class LogLevel(Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


def _initialize_components(config: Config) -> tuple[MemoryStore, LoginSecurityService]:
    """Create an in-memory store seeded from config and a service around it."""
    store = MemoryStore(rules=[rule.model_dump() for rule in config.rules])
    service = build_service(config, store)
    return store, service


async def resolve_command(config: Config, ip: str) -> str:
    """Resolve one address and return the location as JSON."""
    _, service = _initialize_components(config)
    try:
        location = await service.resolver.resolve(ip)
    finally:
        await service.close()
    return location.model_dump_json(indent=2)


async def rules_command(config: Config) -> str:
    """Validate the configured rules and return the enabled set as JSON."""
    store, _ = _initialize_components(config)
    registry = RiskRuleRegistry(store)
    await registry.load()
    return json.dumps(
        [rule.model_dump(mode="json") for rule in registry.rules], indent=2
    )


async def assess_command(config: Config, user_id: int, ip: str, user_agent: str) -> str:
    """Run one detection and return the assessment as JSON."""
    _, service = _initialize_components(config)
    await service.start()
    try:
        assessment = await service.detect(
            user_id, LoginAttempt(user_id=user_id, ip_address=ip, user_agent=user_agent)
        )
    finally:
        await service.close()
    return assessment.model_dump_json(indent=2)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Login Risk Monitor - login anomaly detection"
    )
    parser.add_argument(
        "--config", type=Path, default=None, help="Path to configuration file"
    )
    parser.add_argument(
        "--log-level",
        choices=[level.value for level in LogLevel],
        default=None,
        help="Logging level (overrides the configuration file)",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    resolve = commands.add_parser("resolve", help="Geolocate an IP address")
    resolve.add_argument("ip", help="IPv4 or IPv6 address")

    commands.add_parser("rules", help="Validate and list the enabled rules")

    assess = commands.add_parser("assess", help="Score a single login attempt")
    assess.add_argument("--user", type=int, required=True, help="User id")
    assess.add_argument("--ip", required=True, help="Source IP address")
    assess.add_argument("--user-agent", default="", help="User-Agent header")

    return parser


def main(argv: list[str] | None = None):
    """Main entry point."""
    args = _build_parser().parse_args(argv)

    try:
        config = Config.load(args.config) if args.config else Config()

        level_name = args.log_level or config.logging.level
        log_level = getattr(logging, level_name.upper(), logging.INFO)
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )

        if args.config:
            logger.info("Configuration loaded from: %s", args.config)
        logger.debug("Logging level set to: %s", logging.getLevelName(log_level))

        if args.command == "resolve":
            output = asyncio.run(resolve_command(config, args.ip))
        elif args.command == "rules":
            output = asyncio.run(rules_command(config))
        else:
            output = asyncio.run(
                assess_command(config, args.user, args.ip, args.user_agent)
            )
        print(output)

    except FileNotFoundError as e:
        logger.error("Configuration file not found: %s", e)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)
    except Exception as e:
        logger.error("Fatal error: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
