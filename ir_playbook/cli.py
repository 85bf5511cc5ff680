"""
IR Playbook CLI

Command-line interface for the IR Playbook command pipeline.
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Any, Dict, Optional

from .audit import AuditLedger, AuditQuery, parse_query_time
from .authorization import Actor
from .core.config import Config
from .core.engine import CommandRequest, PlaybookEngine
from .core.exceptions import PlaybookError, ValidationError
from .observability import setup_logging


def load_config(config_path: Optional[str]) -> Config:
    """Load configuration from file or use defaults, then apply the environment."""
    if config_path:
        config = Config.from_file(config_path)
    else:
        config = Config()
    return config.apply_env()


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        prog="irplaybook",
        description="IR Playbook - Authorized, audited incident response actions",
    )

    parser.add_argument(
        "-c", "--config",
        help="Path to configuration file",
        default=None,
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose output",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Logging level",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Run a single command
    run_parser = subparsers.add_parser("run", help="Run one action against a target")
    run_parser.add_argument(
        "action",
        help="Action (status, isolate, release, collect, terminate, memory-capture)",
    )
    run_parser.add_argument("target", help="Target name, alias or address")
    run_parser.add_argument(
        "--actor",
        required=True,
        help="Operator id",
    )
    run_parser.add_argument(
        "--actor-name",
        default=None,
        help="Operator display name",
    )
    run_parser.add_argument(
        "--arg",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Action argument (repeatable), e.g. process=notepad.exe",
    )
    run_parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Timeout in seconds",
    )
    run_parser.add_argument(
        "--incident",
        default=None,
        help="Attach to an existing incident id",
    )

    # Server command
    server_parser = subparsers.add_parser("server", help="Start the API server")
    server_parser.add_argument(
        "--host",
        default=None,
        help="Host to bind to",
    )
    server_parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to bind to",
    )

    # Targets
    subparsers.add_parser("targets", help="List configured targets")

    resolve_parser = subparsers.add_parser("resolve", help="Resolve a target identifier")
    resolve_parser.add_argument("target", help="Target name, alias or address")

    # Audit commands
    audit_parser = subparsers.add_parser("audit", help="Audit ledger operations")
    audit_subparsers = audit_parser.add_subparsers(dest="audit_command")

    for name, help_text in (("query", "Query audit entries"), ("export", "Export audit entries as CSV")):
        sub = audit_subparsers.add_parser(name, help=help_text)
        sub.add_argument("--action", default=None, help="Audit action name, e.g. ISOLATE")
        sub.add_argument("--actor", default=None, help="Actor id")
        sub.add_argument("--target", default=None, help="Target")
        sub.add_argument("--outcome", choices=["SUCCESS", "FAILED", "DENIED"], default=None)
        sub.add_argument("--incident", default=None, help="Incident id")
        sub.add_argument("--since", default=None, help="ISO-8601 start time")
        sub.add_argument("--until", default=None, help="ISO-8601 end time")
        sub.add_argument("--limit", type=int, default=None, help="Maximum entries")

    summary_parser = audit_subparsers.add_parser("summary", help="Summarize recent activity")
    summary_parser.add_argument("--days", type=int, default=7, help="Trailing window in days")

    audit_subparsers.add_parser("verify", help="Verify entry integrity")

    # Info
    subparsers.add_parser("info", help="Show configuration summary")

    # Version
    subparsers.add_parser("version", help="Show version")

    # Health
    subparsers.add_parser("health", help="Health check")

    return parser


def parse_arguments(pairs: list) -> Dict[str, Any]:
    """Parse KEY=VALUE pairs, decoding integer values."""
    arguments: Dict[str, Any] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValidationError(f"Invalid argument (expected KEY=VALUE): {pair}", field="arguments")
        arguments[key.strip()] = int(value) if value.strip().isdigit() else value
    return arguments


def build_query(args: argparse.Namespace) -> AuditQuery:
    return AuditQuery(
        action=args.action,
        actor_id=args.actor,
        target=args.target,
        outcome=args.outcome,
        incident_id=args.incident,
        since=parse_query_time(args.since, "since"),
        until=parse_query_time(args.until, "until"),
        limit=args.limit,
    )


async def cmd_run(args: argparse.Namespace, config: Config) -> int:
    """Run one action."""
    logger = logging.getLogger(__name__)

    engine = PlaybookEngine(config)
    await engine.start()

    try:
        request = CommandRequest(
            actor=Actor(id=args.actor, name=args.actor_name or args.actor),
            action=args.action,
            target=args.target,
            arguments=parse_arguments(args.arg),
            timeout=args.timeout,
            incident_id=args.incident,
        )
        result = await engine.execute(request)

        output = sys.stdout if result.ok else sys.stderr
        print(json.dumps(result.to_dict(), indent=2, default=str), file=output)
        if not result.ok:
            logger.error(f"{result.action} on {result.target} failed: {result.message}")
        return 0 if result.ok else 1

    except PlaybookError as e:
        logger.error(f"Command failed: {e}")
        print(json.dumps(e.to_dict(), indent=2), file=sys.stderr)
        return 1

    finally:
        await engine.stop()


async def cmd_server(args: argparse.Namespace, config: Config) -> int:
    """Start the server."""
    from .rpc import create_server

    logger = logging.getLogger(__name__)
    host = args.host or config.rpc.host
    port = args.port or config.rpc.port
    logger.info(f"Starting IR Playbook server on {host}:{port}")

    engine = PlaybookEngine(config)
    await engine.start()

    def reload_snapshots() -> None:
        try:
            counts = engine.reload()
            logger.info(f"Reloaded configuration: {counts}")
        except PlaybookError as e:
            logger.error(f"Reload failed, keeping previous snapshots: {e}")

    loop = asyncio.get_running_loop()
    if hasattr(signal, "SIGHUP"):
        loop.add_signal_handler(signal.SIGHUP, reload_snapshots)

    server = None
    try:
        server = await create_server(engine, host, port)
        await server.serve_forever()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Shutting down...")
    finally:
        if server:
            await server.stop()
        await engine.stop()

    return 0


def cmd_targets(args: argparse.Namespace, config: Config) -> int:
    """List configured targets."""
    engine = PlaybookEngine(config)
    engine.reload()
    print(json.dumps({
        "targets": [t.to_dict() for t in engine.targets.list_targets()],
        "management_addresses": engine.management_addresses(),
    }, indent=2))
    return 0


def cmd_resolve(args: argparse.Namespace, config: Config) -> int:
    """Resolve a target identifier."""
    engine = PlaybookEngine(config)
    engine.reload()
    try:
        engine.targets.validate(args.target)
    except ValidationError as e:
        print(json.dumps(e.to_dict(), indent=2), file=sys.stderr)
        return 1

    print(json.dumps({
        "identifier": args.target,
        "address": engine.targets.resolve(args.target),
        "target": engine.targets.describe(args.target).to_dict(),
    }, indent=2))
    return 0


def cmd_audit(args: argparse.Namespace, config: Config) -> int:
    """Audit ledger operations."""
    from . import __version__

    ledger = AuditLedger(config.audit, version=__version__)

    try:
        if args.audit_command == "query":
            entries = ledger.query(build_query(args))
            print(json.dumps(entries, indent=2, default=str))
            return 0

        elif args.audit_command == "export":
            sys.stdout.write(ledger.export_csv(build_query(args)))
            return 0

        elif args.audit_command == "summary":
            print(json.dumps(ledger.summarize(args.days), indent=2))
            return 0

        elif args.audit_command == "verify":
            report = ledger.verify()
            print(json.dumps(report.to_dict(), indent=2))
            return 0 if report.valid else 1

    except PlaybookError as e:
        print(json.dumps(e.to_dict(), indent=2), file=sys.stderr)
        return 1

    print("No audit command specified. Use --help for usage.")
    return 1


def cmd_info(args: argparse.Namespace, config: Config) -> int:
    """Show configuration summary."""
    from . import __version__

    info = {
        "name": "IR Playbook",
        "version": __version__,
        "config": config.to_dict(),
        "validation_errors": config.validate(),
    }

    print(json.dumps(info, indent=2))
    return 0


def cmd_version(args: argparse.Namespace, config: Config) -> int:
    """Show version."""
    from . import __version__
    print(f"IR Playbook v{__version__}")
    return 0


def cmd_health() -> int:
    """Emit a health check response."""
    payload = {"status": "ok"}
    print(json.dumps(payload))
    return 0


async def async_main(args: argparse.Namespace, config: Config) -> int:
    """Async main entry point."""
    if args.command == "run":
        return await cmd_run(args, config)

    elif args.command == "server":
        return await cmd_server(args, config)

    elif args.command == "targets":
        return cmd_targets(args, config)

    elif args.command == "resolve":
        return cmd_resolve(args, config)

    elif args.command == "audit":
        return cmd_audit(args, config)

    elif args.command == "info":
        return cmd_info(args, config)

    elif args.command == "version":
        return cmd_version(args, config)

    elif args.command == "health":
        return cmd_health()

    else:
        print("No command specified. Use --help for usage.")
        return 1


def main() -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    # Load config
    try:
        config = load_config(args.config)
    except (OSError, ValueError, TypeError, PlaybookError) as e:
        print(f"Failed to load config: {e}", file=sys.stderr)
        return 1

    # Setup logging
    log_level = "DEBUG" if args.verbose else (args.log_level or config.log_level)
    setup_logging(
        log_level,
        json_format=config.json_logs,
        log_file=config.log_file,
        secrets=config.secrets(),
    )

    # Run async main
    try:
        return asyncio.run(async_main(args, config))
    except PlaybookError as e:
        print(json.dumps(e.to_dict(), indent=2), file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
