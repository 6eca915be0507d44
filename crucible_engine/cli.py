"""Command-line interface for the Crucible engine."""
from __future__ import annotations

import argparse
import asyncio
import sys

from .config import load_config
from .core.risk import LeverageRiskCalculator
from .errors import EngineError
from .logging_setup import configure_logging
from .services import HealthMonitor


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse CLI parser."""
    parser = argparse.ArgumentParser(
        prog="crucible-engine",
        description="Crucible accounting and risk engine",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: config.yaml in project root)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    sub = parser.add_subparsers(dest="command")

    sub.add_parser("check", help="Single keeper pass with alerts")
    sub.add_parser("report", help="Generate position and analytics report")

    monitor_parser = sub.add_parser("monitor", help="Continuous keeper and reconciliation loop")
    monitor_parser.add_argument(
        "interval",
        nargs="?",
        type=int,
        default=None,
        help="Check interval in seconds (overrides config)",
    )

    apy_parser = sub.add_parser("apy", help="Preview the effective APY of a leveraged position")
    apy_parser.add_argument("--base-apy", type=float, required=True, help="Base APY, e.g. 0.08")
    apy_parser.add_argument("--leverage", type=float, default=1.0, help="1.0, 1.5 or 2.0")
    apy_parser.add_argument(
        "--borrow-rate", type=float, default=None, help="Borrow rate (default: from config)"
    )

    return parser


def _apy(args: argparse.Namespace) -> None:
    borrow_rate = args.borrow_rate
    if borrow_rate is None:
        borrow_rate = load_config(args.config).lending.borrow_rate
    calculator = LeverageRiskCalculator(borrow_rate=borrow_rate)
    try:
        calculator.validate_leverage(args.leverage)
    except EngineError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    apy = calculator.effective_apy(args.base_apy, args.leverage)
    print(f"Effective APY at {args.leverage}x: {apy * 100:.2f}%")


async def _run(args: argparse.Namespace) -> None:
    """Execute the selected command."""
    configure_logging(args.log_level)
    config = load_config(args.config)
    monitor = HealthMonitor.from_config(config)
    await monitor.engine.load()

    if args.command == "check":
        await monitor.check_and_alert()
    elif args.command == "report":
        print(await monitor.generate_report())
    elif args.command == "monitor":
        await monitor.run_continuous(args.interval)
    else:
        build_parser().print_help()
        sys.exit(1)


def main() -> None:
    """Entry point."""
    parser = build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "apy":
        configure_logging(args.log_level)
        _apy(args)
        return

    asyncio.run(_run(args))
