"""spotfleet command line entry point."""

import argparse
import asyncio
import sys

from spotfleet.app.config import get_settings
from spotfleet.app.logging import setup_logging
from spotfleet.cli import fleet, monitor, recover
from spotfleet.cli.factory import FleetContext
from spotfleet.core.errors import FleetError


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1, got {value}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Spot instance fleet management",
        prog="spotfleet",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # launch command
    launch_parser = subparsers.add_parser("launch", help="Launch spot instances")
    launch_parser.add_argument("--profile", help="Instance profile (default: FLEET_PROFILE)")
    launch_parser.add_argument(
        "--count", "-n",
        type=_positive_int,
        default=1,
        help="Number of instances to launch",
    )
    launch_parser.add_argument("--az", help="Only try this availability zone")
    launch_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be launched without calling the cloud API",
    )

    # instance commands
    subparsers.add_parser("status", help="Show launched instances")
    subparsers.add_parser("terminate", help="Terminate the last launched instance")
    subparsers.add_parser("ssh", help="Open a shell on the last launched instance")

    # recover command
    recover_parser = subparsers.add_parser(
        "recover",
        help="Recover or restart jobs",
        description="recover <num...>|all, recover restart <num> [ip], recover status",
    )
    recover_parser.add_argument("tokens", nargs="+", help="Slots, 'all', 'status' or 'restart'")
    recover_parser.add_argument("--profile", help="Instance profile for new instances")

    # monitor command
    monitor_parser = subparsers.add_parser("monitor", help="Check job health")
    monitor_parser.add_argument(
        "--watch", "-w",
        action="store_true",
        help="Repeat until interrupted",
    )
    monitor_parser.add_argument(
        "--auto-recover",
        action="store_true",
        help="Recover offline slots automatically",
    )
    monitor_parser.add_argument(
        "--interval",
        type=float,
        help="Seconds between cycles in watch mode (default: FLEET_WATCH_INTERVAL)",
    )

    return parser


async def _dispatch(args: argparse.Namespace, ctx: FleetContext) -> int:
    if args.command == "launch":
        return await fleet.launch(ctx, args.profile, args.count, args.az, args.dry_run)
    if args.command == "status":
        return await fleet.status(ctx)
    if args.command == "terminate":
        return await fleet.terminate(ctx)
    if args.command == "recover":
        request = recover.parse_recover_request(args.tokens)
        return await recover.run(ctx, request, args.profile)
    if args.command == "monitor":
        return await monitor.run(ctx, args.watch, args.auto_recover, args.interval)
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    args = build_parser().parse_args(argv)
    setup_logging()

    try:
        ctx = FleetContext(get_settings())
        if args.command == "ssh":
            code = fleet.ssh(ctx)
        else:
            code = asyncio.run(_dispatch(args, ctx))
    except FleetError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        code = 1
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        code = 130

    sys.exit(code)


if __name__ == "__main__":
    main()
