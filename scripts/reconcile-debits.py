#!/usr/bin/env python3
from __future__ import annotations

from argparse import ArgumentParser
from datetime import datetime, timedelta, timezone
import logging
import os

from sqlalchemy import select

from billing import refund_debit, stale_pending_debits
from db.models import Job
from db.session import SessionLocal


def main() -> None:
    parser = ArgumentParser(description="Refund debits left pending by a crash between debit and job creation")
    parser.add_argument("--older-min", type=int, default=30)
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())

    cutoff = datetime.now(timezone.utc) - timedelta(minutes=args.older_min)
    session = SessionLocal()
    try:
        debits = stale_pending_debits(session, older_than=cutoff)
        refunded = 0
        for debit in debits:
            tx_id = debit.id
            if debit.job_id is not None and session.execute(
                select(Job.id).where(Job.id == debit.job_id)
            ).first():
                print(f"[reconcile] tx={tx_id} has job {debit.job_id}; skipping")
                continue
            if args.dry_run:
                print(f"[reconcile] would refund tx={tx_id} user={debit.user_id} amount={-debit.amount}")
                continue
            result = refund_debit(session, tx_id, reason=f"reconcile: pending > {args.older_min} min")
            if result.refunded:
                refunded += 1
        print(f"[reconcile] refunded {refunded} of {len(debits)} stale debit(s)")
    finally:
        session.close()


if __name__ == "__main__":
    main()
