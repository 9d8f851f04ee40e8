"""Run role reconciliation from the command line.

Examples:
    python -m rolegate.scripts.reverify
    python -m rolegate.scripts.reverify --user 123 --server 456
    python -m rolegate.scripts.reverify --server 456
    python -m rolegate.scripts.reverify --rule 7
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict

from rolegate.core.settings import settings
from rolegate.db.session import SessionLocal, create_tables
from rolegate.services.assets import get_asset_client
from rolegate.services.platform import get_platform_client
from rolegate.services.reconciler import RoleReconciler


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Re-verify granted roles against holdings")
    parser.add_argument("--user", help="Re-verify a single user (requires --server)")
    parser.add_argument("--server", help="Server to re-verify; alone, re-verifies every user in it")
    parser.add_argument("--rule", type=int, help="Re-verify every active grant of one rule")
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create missing tables before running.",
    )
    return parser


async def run(args: argparse.Namespace) -> dict[str, object]:
    assets = get_asset_client()
    platform = get_platform_client()
    try:
        with SessionLocal() as db:
            reconciler = RoleReconciler(db, assets, platform)
            if args.user:
                return asdict(await reconciler.reverify_user(args.user, args.server))
            if args.server:
                return asdict(await reconciler.reverify_server(args.server))
            if args.rule is not None:
                return (await reconciler.reverify_rule(args.rule)).as_dict()
            return (await reconciler.perform_scheduled_reverification()).as_dict()
    finally:
        await assets.close()
        await platform.close()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.user and not args.server:
        parser.error("--user requires --server")

    logging.basicConfig(level=settings.log_level.upper())
    if args.create_tables:
        create_tables()
        print("[reverify] ensured tables exist", file=sys.stderr)

    try:
        report = asyncio.run(run(args))
    except Exception as exc:
        print(f"[reverify] ERROR: {exc}", file=sys.stderr)
        return 1

    print(json.dumps(report, indent=2, sort_keys=True))
    return 0


if __name__ == "__main__":
    sys.exit(main())
