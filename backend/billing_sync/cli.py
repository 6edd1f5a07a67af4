"""
Command-line entry point for operators.

WHAT: Runs the sync and repair jobs from a shell, outside the web process.

WHY: Incident response and one-off migrations need the same jobs the
admin API exposes, with output in a terminal and an exit status a
deploy script can check.

Usage:
    billing-sync sync --dry-run
    billing-sync sync --provider paypal_legacy
    billing-sync fix-paypal
    billing-sync mismatches --fix --dry-run
    billing-sync sync-plans
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from billing_sync.core.config import settings
from billing_sync.db.session import session_scope
from billing_sync.models.subscription import SubscriptionProvider
from billing_sync.services.diagnostics import MismatchService
from billing_sync.services.discovery import SubscriptionDiscovery
from billing_sync.services.paypal_activation import PayPalActivationService
from billing_sync.services.reconciler import SubscriptionReconciler

logger = logging.getLogger("billing_sync.cli")


def _print(title: str, payload: Dict[str, Any]) -> None:
    print(f"\n=== {title} ===")
    print(json.dumps(payload, indent=2, default=str))


async def _run_sync(dry_run: bool, provider: Optional[SubscriptionProvider]) -> int:
    async with session_scope() as db:
        result = await SubscriptionReconciler(db).reconcile(provider=provider, dry_run=dry_run)
        errors = result.errors
        _print("Reconciliation", result.to_dict())

        if provider in (None, SubscriptionProvider.STRIPE):
            discovered = await SubscriptionDiscovery(db).discover_stripe(dry_run=dry_run)
            errors += discovered.errors
            _print("Stripe discovery", discovered.to_dict())
    return errors


async def _run_fix_paypal(dry_run: bool) -> int:
    async with session_scope() as db:
        result = await PayPalActivationService(db).fix_pending(dry_run=dry_run)
    _print("PayPal pending fix", result)
    return result["errors"]


async def _run_mismatches(fix: bool, dry_run: bool) -> int:
    async with session_scope() as db:
        service = MismatchService(db)
        report = await service.find_mismatches()
        _print("Mismatch report", {k: len(v) for k, v in report.items()})
        for section, entries in report.items():
            for entry in entries:
                print(f"  [{section}] {entry['email'] or entry['user_id']}: {entry['detail']}")

        if fix:
            _print("Mismatch fix", await service.fix_mismatches(dry_run=dry_run))
    return 0


async def _run_sync_plans() -> int:
    async with session_scope() as db:
        discovery = SubscriptionDiscovery(db)
        stripe_result = await discovery.discover_stripe_plans()
        paypal_result = await discovery.sync_paypal_legacy_plans()
    _print("Stripe plans", stripe_result.to_dict())
    _print("PayPal legacy plans", paypal_result.to_dict())
    return stripe_result.errors + paypal_result.errors


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="billing-sync",
        description="Subscription reconciliation and repair jobs",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    sync = commands.add_parser("sync", help="Reconcile subscriptions and discover missing Stripe rows")
    sync.add_argument("--dry-run", action="store_true", help="Report without writing")
    sync.add_argument(
        "--provider",
        choices=[p.value for p in SubscriptionProvider],
        help="Only reconcile one provider",
    )

    fix_paypal = commands.add_parser("fix-paypal", help="Activate PayPal subscriptions stuck pending")
    fix_paypal.add_argument("--dry-run", action="store_true")

    mismatches = commands.add_parser("mismatches", help="Report (and optionally fix) role/payment mismatches")
    mismatches.add_argument("--fix", action="store_true", help="Apply fixes after reporting")
    mismatches.add_argument("--dry-run", action="store_true", help="With --fix, only count fixes")

    commands.add_parser("sync-plans", help="Import Stripe prices and legacy PayPal plans")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Run one subcommand.

    Returns:
        0 on success, 1 if any per-row errors were counted
    """
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "sync":
        provider = SubscriptionProvider(args.provider) if args.provider else None
        errors = asyncio.run(_run_sync(args.dry_run, provider))
    elif args.command == "fix-paypal":
        errors = asyncio.run(_run_fix_paypal(args.dry_run))
    elif args.command == "mismatches":
        errors = asyncio.run(_run_mismatches(args.fix, args.dry_run))
    else:
        errors = asyncio.run(_run_sync_plans())

    if errors:
        logger.error(f"{args.command} finished with {errors} errors")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
