"""Best-effort reporting of purchased-credit consumption to Stripe.

Consumption that drew on ``purchase`` grants is reported as a Stripe
billing meter event.  The ledger is the source of truth: reporting happens
after the consumption transaction committed, and every failure here is
logged and swallowed.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine

from ledger_engine.config import Settings
from ledger_engine.models import OwnerType, UsageMetadata
from ledger_engine.retry import async_retry_with_backoff
from ledger_engine.state.database import get_session
from ledger_engine.state.repository import BillingUserRepository, OrganizationRepository

logger = logging.getLogger(__name__)


def _get_stripe(settings: Settings) -> Any:
    """Lazily import and configure the Stripe library."""
    import stripe

    assert settings.stripe_secret_key is not None  # noqa: S101
    stripe.api_key = settings.stripe_secret_key.get_secret_value()
    return stripe


def _retryable_stripe_errors(stripe: Any) -> tuple[type[Exception], ...]:
    return (stripe.APIConnectionError, stripe.APIError, stripe.RateLimitError, TimeoutError)


async def _lookup_stripe_customer(
    engine: AsyncEngine,
    owner_id: str,
    owner_type: OwnerType,
) -> str | None:
    async with get_session(engine) as session:
        if owner_type == OwnerType.ORGANIZATION:
            org = await OrganizationRepository(session).get(owner_id)
            return org.stripe_customer_id if org is not None else None
        return await BillingUserRepository(session).get_stripe_customer_id(owner_id)


async def report_purchased_credits_to_stripe(
    settings: Settings,
    *,
    owner_id: str,
    purchased_credits: int,
    engine: AsyncEngine | None = None,
    owner_type: OwnerType = OwnerType.USER,
    stripe_customer_id: str | None = None,
    event_id: str | None = None,
    timestamp: datetime | None = None,
    extra_payload: dict[str, str] | None = None,
) -> bool:
    """Send one ``billing.MeterEvent`` for *purchased_credits*.

    Parameters
    ----------
    settings:
        Supplies the Stripe key, meter event name, timeout and retry budget.
    owner_id:
        User (or organization) whose purchased credit was consumed.
    purchased_credits:
        Amount drawn from ``purchase`` grants.  Non-positive amounts are
        ignored.
    engine:
        Used to resolve the Stripe customer when *stripe_customer_id* is
        not supplied.
    owner_type:
        Selects the table the customer id is read from.
    stripe_customer_id:
        Known customer id; skips the lookup.
    event_id:
        Usage event id.  Sent in the payload and used for the idempotency
        key ``meter-{event_id}`` so retries never double-bill.
    timestamp:
        Event time, defaults to now.
    extra_payload:
        Additional string fields merged into the payload.

    Returns
    -------
    bool
        ``True`` when Stripe accepted the event; ``False`` when it was
        skipped or failed.  Never raises.
    """
    if purchased_credits <= 0:
        return False
    if not settings.is_stripe_metering_enabled():
        logger.debug("Stripe metering disabled; not reporting %d credits", purchased_credits)
        return False

    log_context = {"owner_id": owner_id, "purchased_credits": purchased_credits, "event_id": event_id}

    customer_id = stripe_customer_id
    if customer_id is None and engine is not None:
        try:
            customer_id = await _lookup_stripe_customer(engine, owner_id, owner_type)
        except Exception:
            logger.error(
                "Failed to fetch Stripe customer for %s",
                owner_id,
                exc_info=True,
                extra={"ledger": log_context},
            )
            return False
    if not customer_id:
        logger.warning(
            "Skipping Stripe metering for %s (missing stripe_customer_id)",
            owner_id,
            extra={"ledger": log_context},
        )
        return False

    stripe = _get_stripe(settings)
    when = timestamp or datetime.now(UTC)
    payload: dict[str, str] = {
        "stripe_customer_id": customer_id,
        "value": str(purchased_credits),
    }
    if event_id:
        payload["event_id"] = event_id
    payload.update(extra_payload or {})

    create_kwargs: dict[str, Any] = {
        "event_name": settings.stripe_meter_event_name,
        "timestamp": int(when.timestamp()),
        "payload": payload,
    }
    if event_id:
        create_kwargs["idempotency_key"] = f"meter-{event_id}"

    async def _send() -> Any:
        return await asyncio.wait_for(
            asyncio.to_thread(stripe.billing.MeterEvent.create, **create_kwargs),
            timeout=settings.stripe_meter_timeout_seconds,
        )

    try:
        await async_retry_with_backoff(
            _send,
            settings.stripe_retry_config(),
            _retryable_stripe_errors(stripe),
            operation="stripe meter event",
        )
    except Exception:
        logger.error(
            "Failed to report %d purchased credits to Stripe for %s",
            purchased_credits,
            owner_id,
            exc_info=True,
            extra={"ledger": log_context},
        )
        return False

    logger.info("Reported %d purchased credits to Stripe for %s", purchased_credits, owner_id)
    return True


class StripeUsageReporter:
    """Purchased-usage collaborator bound to settings and an engine.

    Instances are passed to the consumption functions as ``report_usage``.
    """

    def __init__(self, settings: Settings, engine: AsyncEngine | None = None) -> None:
        self._settings = settings
        self._engine = engine

    async def __call__(
        self,
        owner_id: str,
        amount: int,
        metadata: UsageMetadata,
        owner_type: OwnerType = OwnerType.USER,
    ) -> None:
        await report_purchased_credits_to_stripe(
            self._settings,
            owner_id=owner_id,
            purchased_credits=amount,
            engine=self._engine,
            owner_type=owner_type,
            stripe_customer_id=metadata.stripe_customer_id,
            event_id=metadata.message_id,
            extra_payload={"model": metadata.model},
        )
