"""Consumption request and result models."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from ledger_engine.errors import FailureCode, LedgerFailure
from ledger_engine.models.grant import GrantType


class UsageMetadata(BaseModel):
    """Caller-supplied description of the billable operation.

    The ledger does not price anything; ``cost`` and token counts are
    recorded verbatim on the usage row for analytics.
    """

    message_id: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1)
    start_time: datetime = Field(default_factory=lambda: datetime.now(UTC))
    cost: Decimal = Decimal("0")
    byok: bool = False
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    cache_creation_input_tokens: int | None = None
    cache_read_input_tokens: int = Field(default=0, ge=0)
    reasoning_tokens: int | None = None
    client_id: str | None = None
    client_request_id: str | None = None
    agent_id: str | None = None
    repo_url: str | None = None
    stripe_customer_id: str | None = None


class GrantConsumption(BaseModel):
    """Amount drawn from one grant during a consumption call."""

    operation_id: str
    type: GrantType
    consumed: int
    balance_before: int
    balance_after: int


class ConsumptionResult(BaseModel):
    """Outcome of a consumption call.

    On success ``breakdown`` lists every grant touched in drain order.  On
    failure ``failure`` is set and nothing was written.
    """

    success: bool
    owner_id: str
    credits_requested: int = 0
    credits_consumed: int = 0
    purchased_credits: int = 0
    breakdown: list[GrantConsumption] = Field(default_factory=list)
    usage_event_id: str | None = None
    organization_id: str | None = None
    failure: LedgerFailure | None = None

    @property
    def error(self) -> str | None:
        return self.failure.message if self.failure is not None else None

    @property
    def error_code(self) -> FailureCode | None:
        return self.failure.code if self.failure is not None else None

    @classmethod
    def failed(cls, owner_id: str, failure: LedgerFailure, credits_requested: int = 0) -> ConsumptionResult:
        return cls(
            success=False,
            owner_id=owner_id,
            credits_requested=credits_requested,
            failure=failure,
        )
