"""Domain models for the credit ledger engine."""

from ledger_engine.models.balance import (
    CreditBalance,
    ResetResult,
    UsageAndBalance,
    UserUsageData,
)
from ledger_engine.models.grant import (
    GRANT_PRIORITIES,
    CreditGrant,
    GrantResult,
    GrantType,
    OwnerType,
)
from ledger_engine.models.usage import ConsumptionResult, GrantConsumption, UsageMetadata

__all__ = [
    "GRANT_PRIORITIES",
    "ConsumptionResult",
    "CreditBalance",
    "CreditGrant",
    "GrantConsumption",
    "GrantResult",
    "GrantType",
    "OwnerType",
    "ResetResult",
    "UsageAndBalance",
    "UsageMetadata",
    "UserUsageData",
]
