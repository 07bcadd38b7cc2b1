#!/usr/bin/env python3
"""Pool Reconciliation Report.

Compares on-chain pool balances with what the ledger owes users, and
re-checks failed withdrawals for late confirmations.

Usage:
    python scripts/reconcile.py [--json] [--check-withdrawals]

Options:
    --json               Print the report as JSON
    --check-withdrawals  Also settle interrupted approvals and flag refunded
                         withdrawals that confirmed on-chain
"""

import argparse
import asyncio
import json
import logging
from decimal import Decimal

from poolwallet.assets import Asset
from poolwallet.config import get_settings
from poolwallet.main import Application, configure_logging

logger = logging.getLogger(__name__)


async def build_report(app: Application) -> dict:
    pool = await app.reporter.get_pool_balances()
    liabilities = await app.ledger.get_liabilities()
    pending = (await app.ledger.get_stats())["pending_deposits"]

    report = {}
    for asset in Asset:
        reading = pool[asset]
        owed = liabilities.get(asset, Decimal("0"))
        unclaimed = pending.get(asset.value, {}).get("total_amount", Decimal("0"))
        report[asset.value] = {
            **reading.to_dict(),
            "owed_to_users": str(owed),
            "unclaimed_deposits": str(unclaimed),
            "surplus": None if reading.degraded else str(reading.balance - owed - unclaimed),
        }
    return report


async def run(as_json: bool, check_withdrawals: bool) -> None:
    app = Application(get_settings())
    try:
        await app.initialize()
        report = await build_report(app)

        if as_json:
            print(json.dumps(report, indent=2))
        else:
            for asset, row in report.items():
                status = "DEGRADED" if row["degraded"] else "ok"
                print(
                    f"{asset:5} pool={row['balance']:>24} owed={row['owed_to_users']:>24} "
                    f"unclaimed={row['unclaimed_deposits']:>20} surplus={row['surplus']} [{status}]"
                )

        if check_withdrawals:
            for w in await app.withdrawals.recover_stalled_withdrawals():
                print(f"INTERRUPTED APPROVAL: withdrawal {w.id} is now {w.status} (tx {w.tx_hash})")
            flagged = await app.withdrawals.check_late_confirmations()
            for w in flagged:
                print(f"NEEDS RECONCILIATION: withdrawal {w.id} {w.amount} {w.asset} tx {w.tx_hash}")
    finally:
        await app.close()


def main():
    parser = argparse.ArgumentParser(description="Pool reconciliation report")
    parser.add_argument("--json", action="store_true", help="Print JSON")
    parser.add_argument(
        "--check-withdrawals", action="store_true", help="Re-check failed withdrawals"
    )
    args = parser.parse_args()

    configure_logging(get_settings())
    asyncio.run(run(args.json, args.check_withdrawals))


if __name__ == "__main__":
    main()
