"""Debt settlement applied before every new grant.

All of an owner's negative balances are forgiven in full whenever any new
grant is issued, even one smaller than the debt.  The grant's effective
balance is whatever remains after subtracting the debt.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_engine.state.repository import CreditGrantRepository

logger = logging.getLogger(__name__)


class DebtSettlement(BaseModel):
    """What settling an owner's debt against a new grant did."""

    total_debt: int = Field(default=0, ge=0)
    remaining_amount: int
    settled_operation_ids: list[str] = Field(default_factory=list)


def debt_note(total_debt: int) -> str:
    return f"{total_debt} credits used to clear existing debt"


async def settle_debt(session: AsyncSession, owner_id: str, amount: int) -> DebtSettlement:
    """Zero every negative balance of *owner_id* and net it against *amount*.

    Parameters
    ----------
    session:
        Session of the enclosing grant transaction.
    owner_id:
        Ledger owner.
    amount:
        Nominal size of the grant being issued.

    Returns
    -------
    DebtSettlement
        ``remaining_amount`` is ``amount - total_debt`` and may be zero or
        negative, in which case no grant row should be inserted.
    """
    repo = CreditGrantRepository(session)
    debt_rows = await repo.list_negative(owner_id)

    total_debt = 0
    settled: list[str] = []
    for row in debt_rows:
        total_debt += -row.balance
        await repo.set_balance(row, 0)
        settled.append(row.operation_id)

    if total_debt:
        logger.info(
            "Cleared %d credits of debt across %d grants for %s",
            total_debt,
            len(settled),
            owner_id,
        )

    return DebtSettlement(
        total_debt=total_debt,
        remaining_amount=amount - total_debt,
        settled_operation_ids=settled,
    )
