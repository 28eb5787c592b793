"""
Components module - Pure compute functions of the protection pool engine.

Each component reads a PoolView and returns a PendingUpdate (or a plain
result record); none of them mutates state:
- Tier capital accounting and reconciliation
- Collateral health reports
- Request classification, matching and capital reservation
- Provider deposits, withdrawals, yield claims and tier migration
- Premium settlement with remainder carry
- Margin call state machine
- Liquidation and insurance fund handoff
- Obligation expiry, exercise and cancellation

All component functions are re-exported here for convenience.
"""

# Tier capital accounting
from .tier_accounts import (
    calculate_tier_accounts,
    calculate_tier_account,
    reconcile_tier_accounts,
)

# Collateral health
from .health import (
    HealthReport,
    classify_health,
    calculate_obligation_value,
    calculate_collateral_value,
    calculate_required_value,
    calculate_thresholds,
    calculate_provider_health,
    collateral_needed,
    assess_provider,
)

# Classification & matching
from .matching import (
    ProtectionRequest,
    ReservationPlan,
    calculate_protected_value_pct,
    calculate_required_collateral,
    select_tier,
    calculate_allocations,
    plan_reservation,
    compute_reservation,
)

# Provider ledger
from .provider_ledger import (
    WithdrawalResult,
    REASON_ACTIVE_MARGIN_CALL,
    REASON_INSUFFICIENT_AVAILABLE,
    REASON_UNHEALTHY_AFTER_WITHDRAWAL,
    calculate_available,
    calculate_unlock,
    resolve_position_tier,
    compute_deposit,
    compute_withdrawal,
    check_withdrawal,
    compute_yield_claim,
    compute_tier_migration,
)

# Premium settlement
from .premium_settlement import (
    PremiumSplit,
    calculate_platform_fee,
    calculate_premium_split,
    compute_premium_distribution,
)

# Margin calls
from .margin_calls import (
    calculate_deadline,
    open_call,
    refresh_call,
    resolve_call,
    is_liquidation_due,
    compute_margin_call_transition,
    compute_call_resolution,
)

# Liquidation
from .liquidation import (
    validate_liquidation_fraction,
    calculate_seizure,
    transfer_to_fund,
    compute_liquidation,
)

# Settlement
from .settlement import (
    ExerciseResult,
    calculate_payout,
    compute_expiry,
    compute_exercise,
    compute_cancellation,
)
