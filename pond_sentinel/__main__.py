"""CLI entry point for Pond Sentinel.

Usage:
    # Start the API server (in-memory store unless POND_SUPABASE_* are set)
    python -m pond_sentinel serve
    POND_DEV_MODE=true python -m pond_sentinel serve --port 8010

    # Validate a rule file and print its growth table
    python -m pond_sentinel check-rules
    python -m pond_sentinel check-rules --rules /etc/pond/rules.yaml

    # Days from a current ABW to a target weight
    python -m pond_sentinel days-to-target --current 42 --target 250
"""

from __future__ import annotations

import argparse
import logging
import sys

from .settings import get_settings


def _cmd_serve(args: argparse.Namespace) -> None:
    """Start the API server."""
    import uvicorn

    from .api import create_app

    settings = get_settings()
    app = create_app(settings)

    uvicorn.run(
        app,
        host=args.host or settings.host,
        port=args.port or settings.port,
        log_level=settings.log_level.lower(),
    )


def _cmd_check_rules(args: argparse.Namespace) -> None:
    """Load a rule file and print the growth table."""
    from pydantic import ValidationError as SchemaError

    from .rules_config import load_rules

    path = args.rules or get_settings().rules_path
    try:
        rules = load_rules(path)
    except FileNotFoundError as e:
        print(f"Error: Rule file not found: {e.filename}", file=sys.stderr)
        sys.exit(1)
    except SchemaError as e:
        print(f"Error: Invalid rule file:\n{e}", file=sys.stderr)
        sys.exit(1)

    print(f"Species: {rules.species}  cadence: {rules.cadence_days} days")
    print(f"{'From (g)':>10} {'To (g)':>10} {'g/week':>8} {'g/period':>9}")
    for stage in rules.growth.stages:
        to = f"{stage.to_grams:g}" if stage.to_grams is not None else "-"
        per_period = stage.weekly_rate_grams * rules.cadence_days / 7
        print(
            f"{stage.from_grams:>10g} {to:>10} "
            f"{stage.weekly_rate_grams:>8.1f} {per_period:>9.2f}"
        )
    water = rules.water
    print()
    for signal in ("temp", "ph", "do", "tds"):
        band = water.band_for(signal)
        print(f"  {signal:<5} optimal {band.min:g} to {band.max:g}")


def _cmd_days_to_target(args: argparse.Namespace) -> None:
    """Simulate days from a current ABW to a target."""
    from .growth import ForecastUnavailable, GrowthModel
    from .rules_config import load_rules

    model = GrowthModel.from_rules(load_rules(args.rules or get_settings().rules_path))
    result = model.days_to_target(args.current, args.target)
    if isinstance(result, ForecastUnavailable):
        print(f"Cannot compute: {result.value}")
        sys.exit(2)
    print(f"{result} day{'s' if result != 1 else ''} from {args.current:g} g to {args.target:g} g")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="pond_sentinel",
        description="Pond Sentinel: aquaculture growth forecasting and insights",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve = subparsers.add_parser("serve", help="Start the API server")
    serve.add_argument("--host", default=None, help="Bind host (default from settings)")
    serve.add_argument("--port", type=int, default=None, help="Bind port (default from settings)")

    check = subparsers.add_parser("check-rules", help="Validate a rule file")
    check.add_argument("--rules", default=None, help="Rule YAML path (packaged default)")

    days = subparsers.add_parser("days-to-target", help="Days from current ABW to target")
    days.add_argument("--current", type=float, required=True, help="Current ABW in grams")
    days.add_argument("--target", type=float, required=True, help="Target weight in grams")
    days.add_argument("--rules", default=None, help="Rule YAML path (packaged default)")

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "serve":
        _cmd_serve(args)
    elif args.command == "check-rules":
        _cmd_check_rules(args)
    elif args.command == "days-to-target":
        _cmd_days_to_target(args)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
