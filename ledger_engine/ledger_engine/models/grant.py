"""Credit grant models.

A grant is one row of an owner's ledger: an amount of credit with its own
priority and optional expiry.  Grant categories are a closed set; only
``purchase`` changes engine behaviour (purchased consumption is reported to
Stripe), the rest are audit labels that also pick a default priority.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class GrantType(str, Enum):
    """Category tag of a credit grant."""

    FREE = "free"
    REFERRAL = "referral"
    REFERRAL_LEGACY = "referral_legacy"
    PURCHASE = "purchase"
    ADMIN = "admin"
    ORGANIZATION = "organization"
    AD = "ad"


class OwnerType(str, Enum):
    """Kind of ledger a grant belongs to."""

    USER = "user"
    ORGANIZATION = "organization"


# Lower value drains first.  Expiring and free tiers sit below purchased
# credit so that cash-backed balance is preserved longest.
GRANT_PRIORITIES: dict[GrantType, int] = {
    GrantType.FREE: 20,
    GrantType.REFERRAL: 50,
    GrantType.REFERRAL_LEGACY: 30,
    GrantType.AD: 50,
    GrantType.ADMIN: 60,
    GrantType.ORGANIZATION: 70,
    GrantType.PURCHASE: 80,
}


class CreditGrant(BaseModel):
    """Snapshot of a single ``credit_ledger`` row."""

    model_config = ConfigDict(from_attributes=True)

    operation_id: str = Field(..., min_length=1)
    owner_id: str = Field(..., min_length=1)
    owner_type: OwnerType = OwnerType.USER
    type: GrantType
    priority: int
    principal: int = Field(..., ge=0)
    balance: int
    description: str | None = None
    expires_at: datetime | None = None
    created_at: datetime


class GrantResult(BaseModel):
    """Outcome of a grant creation after debt settlement.

    ``created`` is ``False`` when the whole amount went to clearing debt
    and no new row was inserted, or when ``replayed`` is set.
    """

    operation_id: str
    owner_id: str
    type: GrantType
    amount: int = Field(..., gt=0, description="Requested (nominal) grant size.")
    debt_cleared: int = Field(default=0, ge=0)
    balance: int = Field(default=0, ge=0, description="Balance of the new row, 0 if none.")
    created: bool = False
    replayed: bool = Field(default=False, description="The operation id was already applied; nothing changed.")
