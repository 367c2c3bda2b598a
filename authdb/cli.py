"""
authdb CLI — Operational commands for the database layer.

Commands:
- authdb resolve   — Run source resolution and print the (masked) outcome
- authdb health    — Resolve, then probe the active pool and print the report
- authdb mask      — Redact credentials from a connection string
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Optional

logger = logging.getLogger("authdb.cli")


def main(argv: Optional[list] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="authdb",
        description="authdb — database connection resolution and health",
    )
    parser.add_argument(
        "--config", default=None, help="Path to authdb.yaml (default: auto-discover)"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # authdb resolve
    resolve_parser = subparsers.add_parser("resolve", help="Resolve the database source")
    resolve_parser.add_argument(
        "--no-connect", action="store_true",
        help="Only resolve and configure; do not open any connection",
    )

    # authdb health
    health_parser = subparsers.add_parser("health", help="Probe the active database pool")
    health_parser.add_argument(
        "--platform", action="store_true",
        help="Print the aggregated platform report instead of the bare probe",
    )

    # authdb mask
    mask_parser = subparsers.add_parser("mask", help="Redact credentials from a value")
    mask_parser.add_argument("value", help="Connection string or text to mask")

    args = parser.parse_args(argv)

    if args.command == "resolve":
        return cmd_resolve(args)
    elif args.command == "health":
        return cmd_health(args)
    elif args.command == "mask":
        return cmd_mask(args)
    else:
        parser.print_help()
        return 0


def _load(args: argparse.Namespace):
    from authdb.engine.config import build_config_provider, load_settings
    from authdb.engine.errors import AuthDBConfigError
    from authdb.engine.logging import configure_logging

    try:
        settings = load_settings(args.config)
    except AuthDBConfigError as e:
        print(f"[ERROR] {e.message}")
        return None, None
    configure_logging(settings.logging)
    return settings, build_config_provider(settings)


def cmd_resolve(args: argparse.Namespace) -> int:
    """Print the resolved source, descriptor and pool configuration as JSON."""
    settings, config = _load(args)
    if settings is None:
        return 1

    if args.no_connect:
        from authdb.db.descriptor import ConnectionDescriptorParser
        from authdb.db.pool import PoolConfigurator
        from authdb.db.sources import SourceResolver
        from authdb.engine.config import tuning_from_config
        from authdb.engine.errors import AuthDBError

        source = SourceResolver().resolve(config)
        try:
            descriptor = ConnectionDescriptorParser().parse(source)
            pool_config = PoolConfigurator().configure(
                descriptor, tuning_from_config(config, settings.pool),
            )
        except AuthDBError as e:
            print(json.dumps({"source": source.describe(), "error": e.to_dict()}, indent=2, default=str))
            return 1
        print(json.dumps(
            {"source": source.describe(), "pool": pool_config.to_dict()},
            indent=2, default=str,
        ))
        return 0

    from authdb.db.session import close_database, init_database

    outcome = init_database(config)
    try:
        print(json.dumps(outcome.to_dict(), indent=2, default=str))
    finally:
        close_database()
    return 0


def cmd_health(args: argparse.Namespace) -> int:
    """Probe the database; exit code 1 only when the status is DOWN."""
    settings, config = _load(args)
    if settings is None:
        return 1

    from authdb.db.session import close_database, get_active_pool, init_database
    from authdb.engine.health import HealthCheckService, HealthProbe, HealthStatus

    init_database(config)
    try:
        if args.platform:
            service = HealthCheckService()
            service.register_database_check(get_active_pool, timeout=settings.health.timeout)
            report = asyncio.run(service.get_platform_health())
            status = report["status"]
        else:
            probe_report = HealthProbe().probe(get_active_pool())
            report = probe_report.to_dict()
            status = probe_report.status.value
    finally:
        close_database()

    print(json.dumps(report, indent=2, default=str))
    return 1 if status == HealthStatus.DOWN.value else 0


def cmd_mask(args: argparse.Namespace) -> int:
    from authdb.engine.masking import mask_text

    print(mask_text(args.value))
    return 0


if __name__ == "__main__":
    sys.exit(main())
