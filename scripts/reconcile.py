#!/usr/bin/env python3
"""Transfer Ledger Reconciliation Script.

Finds transfer records stuck in pending/submitted (e.g. after a crash between
relay submission and receipt) and settles them against chain state, then
brings invoice balances in line with the confirmed transfers that paid them.

Usage:
    python scripts/reconcile.py [--fix] [--minutes 30] [--overdue]

Options:
    --fix      Write the resolved status (default: report only)
    --minutes  Age after which an in-flight record counts as stale
    --overdue  Also flag open invoices past their due date
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from dotenv import load_dotenv

from gaslesspay.config import get_settings
from gaslesspay.context import build_context
from gaslesspay.services.reconciliation import ReconciliationService

load_dotenv()

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


async def main():
    parser = argparse.ArgumentParser(description="Transfer Ledger Reconciliation")
    parser.add_argument("--fix", action="store_true", help="Write resolved statuses")
    parser.add_argument("--minutes", type=int, help="Stale threshold in minutes")
    parser.add_argument("--overdue", action="store_true", help="Mark overdue invoices")

    args = parser.parse_args()

    settings = get_settings()
    ctx = build_context(settings)
    await ctx.db.create_all()

    reconciliation = ctx.reconciliation
    if args.minutes is not None:
        reconciliation = ReconciliationService(
            ctx.db, reconciliation.rpc, args.minutes, bundler=reconciliation.bundler
        )

    logger.info("=" * 60)
    logger.info("TRANSFER LEDGER RECONCILIATION")
    logger.info("=" * 60)

    if not args.fix:
        logger.info("REPORT MODE - No changes will be made (use --fix)")

    try:
        outcomes = await reconciliation.run(fix=args.fix)
        invoice_outcomes = await reconciliation.reconcile_invoices(fix=args.fix)

        overdue = []
        if args.overdue and args.fix:
            overdue = await ctx.invoices.mark_overdue_invoices()
    finally:
        await ctx.close()

    # Summary
    logger.info("=" * 60)
    logger.info("SUMMARY")
    logger.info("=" * 60)

    if not outcomes:
        logger.info("No stale transfers found")

    for o in outcomes:
        target = o.new_status or "unchanged"
        logger.info(f"{o.transaction_id}: {o.previous_status} -> {target} ({o.detail})")

    for o in invoice_outcomes:
        target = o.new_status or "unchanged"
        logger.info(
            f"Invoice {o.invoice_number}: paid {o.recorded_paid} -> {o.ledger_paid} ({target})"
        )

    if overdue:
        logger.info(f"Overdue invoices: {', '.join(i['invoice_number'] for i in overdue)}")

    return outcomes


if __name__ == "__main__":
    asyncio.run(main())
