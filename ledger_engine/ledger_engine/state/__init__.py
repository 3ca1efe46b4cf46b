"""State persistence layer for the credit ledger (PostgreSQL or SQLite)."""

from ledger_engine.state.database import (
    TransactionRunner,
    get_engine,
    get_session,
    make_transaction_runner,
    run_in_transaction,
)
from ledger_engine.state.repository import (
    BillingUserRepository,
    CreditGrantRepository,
    OrganizationRepository,
    ReferralRepository,
    SyncFailureRepository,
    UsageMessageRepository,
)

__all__ = [
    "BillingUserRepository",
    "CreditGrantRepository",
    "OrganizationRepository",
    "ReferralRepository",
    "SyncFailureRepository",
    "TransactionRunner",
    "UsageMessageRepository",
    "get_engine",
    "get_session",
    "make_transaction_runner",
    "run_in_transaction",
]
