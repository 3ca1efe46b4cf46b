"""Credit ledger operations: grants, consumption, resets, delegation."""

from ledger_engine.billing.balance import (
    calculate_usage_and_balance,
    calculate_usage_this_cycle,
    get_user_usage_data,
)
from ledger_engine.billing.consumption import consume_credits, consume_from_ordered_grants
from ledger_engine.billing.cycle import (
    calculate_total_referral_bonus,
    get_previous_free_grant_amount,
    next_quota_reset_after,
    trigger_monthly_reset_and_grant,
)
from ledger_engine.billing.debt import settle_debt
from ledger_engine.billing.delegation import (
    consume_credits_with_delegation,
    consume_credits_with_fallback,
    extract_owner_and_repo,
    find_organization_for_repository,
    normalize_repository_url,
)
from ledger_engine.billing.grants import (
    grant_credit_operation,
    grant_credits,
    grant_organization_credits,
    process_and_grant_credit,
    revoke_grant_by_operation_id,
)
from ledger_engine.billing.stripe_metering import StripeUsageReporter, report_purchased_credits_to_stripe

__all__ = [
    "StripeUsageReporter",
    "calculate_total_referral_bonus",
    "calculate_usage_and_balance",
    "calculate_usage_this_cycle",
    "consume_credits",
    "consume_credits_with_delegation",
    "consume_credits_with_fallback",
    "consume_from_ordered_grants",
    "extract_owner_and_repo",
    "find_organization_for_repository",
    "get_previous_free_grant_amount",
    "get_user_usage_data",
    "grant_credit_operation",
    "grant_credits",
    "grant_organization_credits",
    "next_quota_reset_after",
    "normalize_repository_url",
    "process_and_grant_credit",
    "report_purchased_credits_to_stripe",
    "revoke_grant_by_operation_id",
    "settle_debt",
    "trigger_monthly_reset_and_grant",
]
