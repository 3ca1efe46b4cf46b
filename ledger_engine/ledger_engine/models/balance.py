"""Balance, usage, and quota-cycle report models."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from ledger_engine.models.grant import GrantType


def _zero_by_type() -> dict[GrantType, int]:
    return {grant_type: 0 for grant_type in GrantType}


class CreditBalance(BaseModel):
    """Aggregate balance across an owner's non-expired grants.

    Attributes
    ----------
    total_remaining:
        Sum of positive balances.
    total_debt:
        Sum of the absolute value of negative balances.
    net_balance:
        ``total_remaining - total_debt``; negative when the owner is in debt.
    breakdown:
        Positive balance per grant type.
    principals:
        Granted principal per grant type.
    """

    total_remaining: int = 0
    total_debt: int = 0
    net_balance: int = 0
    breakdown: dict[GrantType, int] = Field(default_factory=_zero_by_type)
    principals: dict[GrantType, int] = Field(default_factory=_zero_by_type)


class UsageAndBalance(BaseModel):
    usage_this_cycle: int = 0
    balance: CreditBalance = Field(default_factory=CreditBalance)


class ResetResult(BaseModel):
    """Return value of a monthly reset trigger."""

    auto_topup_enabled: bool
    quota_reset_date: datetime
    granted: int = Field(default=0, ge=0, description="Credits issued by this call.")
    operation_id: str | None = None


class UserUsageData(BaseModel):
    """Everything a usage dashboard shows for one user."""

    usage_this_cycle: int = 0
    balance: CreditBalance = Field(default_factory=CreditBalance)
    next_quota_reset: datetime
    auto_topup_enabled: bool = False
