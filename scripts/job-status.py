#!/usr/bin/env python3
from __future__ import annotations

from argparse import ArgumentParser

from sqlalchemy import desc, func, select

from db.models import JOB_KINDS, Job
from db.session import SessionLocal


def main() -> None:
    parser = ArgumentParser(description="Show recent agent job statuses")
    parser.add_argument("--limit", type=int, default=10)
    parser.add_argument("--kind", choices=JOB_KINDS)
    parser.add_argument("--summary", action="store_true")
    parser.add_argument("--failed", action="store_true", help="Show failed jobs with callback payload")
    args = parser.parse_args()

    session = SessionLocal()
    try:
        if args.summary:
            stmt = select(Job.kind, Job.status, func.count()).group_by(Job.kind, Job.status)
            if args.kind:
                stmt = stmt.where(Job.kind == args.kind)
            for kind, status, count in session.execute(stmt).all():
                print(f"[summary] {kind}/{status}: {count}")
            return
        stmt = select(Job)
        if args.kind:
            stmt = stmt.where(Job.kind == args.kind)
        if args.failed:
            stmt = stmt.where(Job.status == "FAILED")
        stmt = stmt.order_by(desc(Job.created_at)).limit(args.limit)
        for job in session.execute(stmt).scalars().all():
            print(
                f"[job] id={job.id} kind={job.kind} status={job.status} "
                f"generator_id={job.generator_id} credits={job.credits_charged}"
            )
            if args.failed and job.result:
                print(f"[job] result={job.result}")
    finally:
        session.close()


if __name__ == "__main__":
    main()
