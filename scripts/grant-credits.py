#!/usr/bin/env python3
from __future__ import annotations

from argparse import ArgumentParser
import sys

from billing import grant_credits
from db.session import SessionLocal


def main() -> None:
    parser = ArgumentParser(description="Grant credits to a user account")
    parser.add_argument("user_id")
    parser.add_argument("amount", type=int)
    parser.add_argument("--note", default="operator grant")
    args = parser.parse_args()

    session = SessionLocal()
    try:
        balance = grant_credits(session, user_id=args.user_id, amount=args.amount, note=args.note)
    except (LookupError, ValueError) as exc:
        print(f"[grant] failed: {exc}", file=sys.stderr)
        raise SystemExit(1)
    finally:
        session.close()
    print(f"[grant] user={args.user_id} +{args.amount} balance={balance}")


if __name__ == "__main__":
    main()
