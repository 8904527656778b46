"""CLI entrypoint for CryptoPulse."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from datetime import timedelta
from typing import List, Optional

from cryptopulse.config import load_settings
from cryptopulse.config.logging import configure_logging
from cryptopulse.orchestration.context import AppContext, build_context
from cryptopulse.services.ingestion import IngestionCancelled


async def _init(context: AppContext, args: argparse.Namespace) -> int:
    await context.initialize()
    print(f"Store ready with {await context.repository.count():,} rows")
    return 0


async def _seed(context: AppContext, args: argparse.Namespace) -> int:
    try:
        result = await context.seed(
            assets=args.assets or None,
            target_rows=args.target,
            clear_first=not args.no_clear,
        )
    except IngestionCancelled as exc:
        print(f"{context.ingestion.status} Kept {exc.result.rows_written:,} rows.")
        return 130
    print(context.ingestion.status)
    for asset_id, message in sorted(result.failures.items()):
        print(f"  {asset_id}: {message}", file=sys.stderr)
    print(f"DB now contains {await context.repository.count():,} rows total.")
    return 0


async def _live(context: AppContext, args: argparse.Namespace) -> int:
    await context.initialize()
    if args.ticks:
        for _ in range(args.ticks):
            report = await context.live.tick()
            print(
                json.dumps(
                    {
                        "updated": {k: str(v) for k, v in report.updated.items()},
                        "failures": report.failures,
                        "degraded": report.degraded,
                    }
                )
            )
        return 0
    context.live.start()
    print(context.live.status)
    try:
        while context.live.running:
            await asyncio.sleep(1)
    finally:
        await context.live.stop()
        print(context.live.status)
    return 0


async def _movers(context: AppContext, args: argparse.Namespace) -> int:
    await context.initialize()
    rows = await context.analysis.compute(timedelta(hours=args.window_hours), args.limit)
    if not rows:
        print("No movers: not enough data in the store.")
    for row in rows:
        print(f"{row.asset_id:<24} {row.start_price:>16} -> {row.end_price:>16} {row.change_pct:+.2f}%")
    return 0


async def _status(context: AppContext, args: argparse.Namespace) -> int:
    await context.initialize()
    assets = await context.repository.asset_ids()
    print(json.dumps({"rows": await context.repository.count(), "assets": assets}))
    return 0


COMMANDS = {
    "init": _init,
    "seed": _seed,
    "live": _live,
    "movers": _movers,
    "status": _status,
}


async def _dispatch(args: argparse.Namespace) -> int:
    context = build_context()
    try:
        return await COMMANDS[args.command](context, args)
    finally:
        await context.aclose()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="CryptoPulse price ingestion")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("init", help="Create the local price store")

    seed_parser = subparsers.add_parser("seed", help="Seed historical prices")
    seed_parser.add_argument("--target", type=int, default=None, help="Stop after this many rows")
    seed_parser.add_argument("--no-clear", action="store_true", help="Keep existing rows")
    seed_parser.add_argument("--assets", nargs="*", help="Asset ids (defaults to configured list)")

    live_parser = subparsers.add_parser("live", help="Poll spot prices")
    live_parser.add_argument("--ticks", type=int, default=0, help="Run N ticks immediately and exit")

    movers_parser = subparsers.add_parser("movers", help="Show top movers")
    movers_parser.add_argument("--window-hours", type=float, default=24.0)
    movers_parser.add_argument("--limit", type=int, default=20)

    subparsers.add_parser("status", help="Show row count and stored assets")
    serve_parser = subparsers.add_parser("serve", help="Run the dashboard API")
    serve_parser.add_argument("--host", default=None)
    serve_parser.add_argument("--port", type=int, default=None)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(load_settings().get("logging", "level", default="INFO"))

    if args.command == "serve":
        from cryptopulse.dashboard.api import main as serve

        serve(host=args.host, port=args.port)
        return 0
    if args.command not in COMMANDS:
        parser.print_help()
        return 1
    try:
        return asyncio.run(_dispatch(args))
    except KeyboardInterrupt:
        print("Interrupted.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
