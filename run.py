"""
Entry point: operator commands for content resolution and plan publishing.

Usage::

    python run.py resolve 1234
    python run.py inventory --top 20
    python run.py reconcile <location_id> --push
    python run.py publish <plan_id>
    python run.py rollback <plan_id>
    python run.py watch
"""

import argparse
import asyncio
import json
import logging
import sys

from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("run")

PLAN_COMMANDS = ("simulate", "approve", "publish", "retry", "rollback", "cancel")


def _print(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Yodeck publish orchestrator")
    sub = parser.add_subparsers(dest="command", required=True)

    resolve = sub.add_parser("resolve", help="Show what a screen is playing")
    resolve.add_argument("screen_id", type=int)

    inventory = sub.add_parser("inventory", help="Content inventory across screens")
    inventory.add_argument("--top", type=int, default=10)

    reconcile = sub.add_parser("reconcile", help="Reconcile one location")
    reconcile.add_argument("location_id")
    reconcile.add_argument("--push", action="store_true")

    for name in PLAN_COMMANDS:
        plan = sub.add_parser(name, help=f"{name.capitalize()} a placement plan")
        plan.add_argument("plan_ids", nargs="+")

    watch = sub.add_parser("watch", help="Run the periodic reconcile loop")
    watch.add_argument("--push", action="store_true")
    return parser


async def main(argv=None) -> int:
    from yodeck_orchestrator.config import get_settings, validate_env
    from yodeck_orchestrator.database import get_db
    from yodeck_orchestrator.logging import LogLevel, init_logger
    from yodeck_orchestrator.placement import PublishOrchestrator
    from yodeck_orchestrator.reconcile import ReconcileScheduler, TruthReconciler
    from yodeck_orchestrator.yodeck import (
        build_content_inventory,
        clear_client,
        get_client,
        resolve_screen_content,
    )

    args = build_parser().parse_args(argv)
    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level.upper())
    validate_env(strict=True)

    db = await get_db()
    ops = init_logger(settings.log_dir, db=db, min_level=LogLevel[settings.log_level.upper()])

    client = await get_client(db, settings)
    if client is None:
        logger.error("Yodeck is not configured: set YODECK_API_TOKEN or store credentials")
        return 2

    try:
        if args.command == "resolve":
            screen = await client.get_screen(args.screen_id)
            if not screen.ok:
                logger.error("Screen %s: %s", args.screen_id, screen.error)
                return 1
            content = await resolve_screen_content(client, screen.data)
            _print(content.to_dict())
            return 0

        if args.command == "inventory":
            inventory = await build_content_inventory(client, top_n=args.top)
            _print(inventory.to_dict())
            return 0

        reconciler = TruthReconciler(db, client)

        if args.command == "reconcile":
            result = await reconciler.reconcile(
                args.location_id, push=args.push, reason="cli"
            )
            _print(result.to_dict())
            return 0 if result.ok else 1

        if args.command == "watch":
            scheduler = ReconcileScheduler(
                db,
                reconciler,
                interval_seconds=settings.reconcile_interval_seconds,
                push=args.push,
            )
            await scheduler.start()
            return 0

        orchestrator = PublishOrchestrator(
            db, client, reconciler=reconciler, settings=settings
        )
        operation = getattr(orchestrator, args.command)
        results = [await operation(plan_id) for plan_id in args.plan_ids]
        _print([r.to_dict() for r in results])
        return 0 if all(r.ok for r in results) else 1
    finally:
        await clear_client()
        await ops.flush()


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("Interrupted")
