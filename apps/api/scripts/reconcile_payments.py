"""Repair credit state left behind by interrupted requests.

Grants credits for paid transactions whose purchase ledger row is missing, and
refunds message debits whose message was never stored nor compensated.

Usage: python scripts/reconcile_payments.py [--dry-run] [--limit N] [--min-age SECONDS]
"""

import argparse
import asyncio
import os
import sys

# Add parent dir to path to find config/database
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import async_session_maker, engine
import models  # noqa: F401
from services.reconciliation import (
    find_paid_transactions_missing_ledger,
    find_unrefunded_message_debits,
    repair_missing_purchase_credits,
    repair_unrefunded_message_debits,
)


async def reconcile_payments_async(dry_run: bool, limit: int, min_age: int) -> None:
    print("🔍 Scanning paid transactions without purchase ledger entries...")
    try:
        async with async_session_maker() as db:
            if dry_run:
                pending = await find_paid_transactions_missing_ledger(db, limit=limit)
                for txn in pending:
                    print(f"  • {txn.id} user={txn.user_id} credits={txn.credits} session={txn.session_id}")
                print(f"✅ Dry run: {len(pending)} transaction(s) need repair.")

                print("🔍 Scanning message debits without a stored message or refund...")
                debits = await find_unrefunded_message_debits(db, older_than_seconds=min_age, limit=limit)
                for entry in debits:
                    print(f"  • message={entry.ref_id} user={entry.user_id} delta={entry.delta}")
                print(f"✅ Dry run: {len(debits)} message debit(s) need refund.")
                return

            result = await repair_missing_purchase_credits(db, limit=limit)
            print(f"✅ Checked {result['checked']}, repaired {len(result['repaired'])}.")
            for txn_id in result["repaired"]:
                print(f"  • credited {txn_id}")
            if result["skipped"]:
                print(f"⚠️ Skipped (already credited or changed): {', '.join(result['skipped'])}")

            print("🔍 Scanning message debits without a stored message or refund...")
            refunds = await repair_unrefunded_message_debits(db, older_than_seconds=min_age, limit=limit)
            print(f"✅ Checked {refunds['checked']}, refunded {len(refunds['refunded'])}.")
            for message_id in refunds["refunded"]:
                print(f"  • refunded message {message_id}")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument("--min-age", type=int, default=300, help="Skip message debits younger than this many seconds")
    args = parser.parse_args()
    asyncio.run(reconcile_payments_async(args.dry_run, args.limit, args.min_age))
