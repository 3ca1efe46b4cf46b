"""Analytics event definitions for ledger activity.

Every money-affecting operation emits one event after its transaction has
committed.  Events are collected in memory and flushed to a sink; they are
informational only and never feed back into balances.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class AnalyticsEventType(str, Enum):
    """Closed set of ledger analytics events."""

    CREDIT_CONSUMED = "backend.credit_consumed"
    CREDIT_GRANTED = "backend.credit_granted"
    GRANT_REVOKED = "backend.grant_revoked"
    DEBT_SETTLED = "backend.debt_settled"
    QUOTA_RESET = "backend.quota_reset"


class AnalyticsEvent(BaseModel):
    """A single analytics event.

    Attributes
    ----------
    event_id:
        Unique identifier for this event.
    event:
        The event type.
    owner_id:
        User or organization the event concerns.
    timestamp:
        When the event occurred (UTC).
    properties:
        Event-specific payload (amounts, message ids, models).
    """

    event_id: str = Field(default_factory=lambda: f"evt-{uuid.uuid4().hex[:12]}")
    event: AnalyticsEventType
    owner_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    properties: dict[str, Any] = Field(default_factory=dict)
