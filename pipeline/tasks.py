from __future__ import annotations

import logging
from uuid import UUID

from billing import refund_debit
from db.session import SessionLocal

logger = logging.getLogger(__name__)


def refund_debit_job(transaction_id: str, reason: str) -> dict:
    """Worker-side retry of a refund that failed inline; raising lets rq retry it."""
    session = SessionLocal()
    try:
        result = refund_debit(session, UUID(transaction_id), reason=reason)
        logger.info("deferred refund tx=%s refunded=%s", transaction_id, result.refunded)
        return {
            "transaction_id": transaction_id,
            "refunded": result.refunded,
            "balance_after": result.balance_after,
        }
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
