from .costs import CreditCost, get_cost, load_cost_table, reload_costs
from .ledger import (
    INSUFFICIENT_CREDITS,
    USER_NOT_FOUND,
    DebitResult,
    RefundResult,
    get_balance,
    grant_credits,
    refund_debit,
    settle_debit,
    stale_pending_debits,
    try_debit,
)

__all__ = [
    "CreditCost",
    "DebitResult",
    "INSUFFICIENT_CREDITS",
    "RefundResult",
    "USER_NOT_FOUND",
    "get_balance",
    "get_cost",
    "grant_credits",
    "load_cost_table",
    "refund_debit",
    "reload_costs",
    "settle_debit",
    "stale_pending_debits",
    "try_debit",
]
