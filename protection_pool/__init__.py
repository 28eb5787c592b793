"""
protection_pool - Bitcoin Protection Pool Engine

Capital allocation, collateral health, margin calls and liquidation for a
pool whose providers collateralize price-protection policies.

Usage:
    from protection_pool import ProtectionEngine, ProtectionRequest, StaticPriceSource

    engine = ProtectionEngine(StaticPriceSource({"BTC": Decimal("50000")}))
    engine.deposit("alice", "balanced", 3_000)

    obligation_id = engine.classify_and_reserve(ProtectionRequest(
        owner="bob",
        protected_value=Decimal("43000"),
        protected_amount=300,
        duration=timedelta(days=30),
    ))

    report = engine.get_health("alice")
    sweep = engine.tick(datetime(1970, 1, 2))
"""

# Core types
from .core import (
    PoolView,
    RiskTier,
    ProviderPosition,
    TierAccount,
    ProtectionObligation,
    MarginCall,
    LiquidationEvent,
    PoolEvent,
    StateChange,
    UpdateOrigin,
    PendingUpdate,
    AppliedUpdate,
    PolicyType,
    ObligationStatus,
    MarginCallStatus,
    HealthStatus,
    ResolutionMethod,
    ExecuteResult,
    OriginType,
    PoolError,
    ValidationError,
    CapacityError,
    NoMatchingTier,
    InsufficientTierCapital,
    StateConflictError,
    ExternalDependencyError,
    PriceUnavailable,
    PriceStale,
    CollaboratorError,
    InvariantViolation,
    MutationHalted,
    build_update,
    empty_update,
    merge_updates,
    derive_id,
    allocate_pro_rata,
    INSURANCE_FUND,
    DEFAULT_ASSET,
    EVENT_MARGIN_CALL_ISSUED,
    EVENT_MARGIN_CALL_ESCALATED,
    EVENT_MARGIN_CALL_UPDATED,
    EVENT_MARGIN_CALL_RESOLVED,
    EVENT_PROVIDER_LIQUIDATED,
    EVENT_OBLIGATION_TRANSFERRED,
)

# Store
from .store import PoolStore
from .staging import StagedView

# Tiers
from .tiers import RiskTierRegistry, default_tiers

# Configuration
from .config import EngineConfig

# Components
from .components import (
    HealthReport,
    ProtectionRequest,
    ReservationPlan,
    WithdrawalResult,
    PremiumSplit,
    ExerciseResult,
    calculate_provider_health,
    calculate_required_collateral,
    calculate_premium_split,
    calculate_payout,
    collateral_needed,
    assess_provider,
    plan_reservation,
    compute_reservation,
    compute_deposit,
    compute_withdrawal,
    check_withdrawal,
    compute_yield_claim,
    compute_tier_migration,
    compute_premium_distribution,
    compute_margin_call_transition,
    compute_call_resolution,
    compute_liquidation,
    compute_expiry,
    compute_exercise,
    compute_cancellation,
    reconcile_tier_accounts,
)

# Prices and premiums
from .pricing_source import (
    PriceQuote,
    PriceSource,
    StaticPriceSource,
    TimeSeriesPriceSource,
    GuardedPriceSource,
    annualized_volatility,
)
from .premium import FixedRatePremiumCalculator, BlackScholesPremiumCalculator

# Collaborators
from .collaborators import (
    PolicyRegistry,
    InsuranceFund,
    PremiumCalculator,
    Notifier,
    InMemoryPolicyRegistry,
    InMemoryInsuranceFund,
    RecordingNotifier,
    LoggingNotifier,
)

# Scheduling
from .scheduled_events import Event, EventScheduler, expiry_event

# Engine
from .engine import ProtectionEngine, SweepReport


__all__ = [
    # Core
    'PoolView', 'RiskTier', 'ProviderPosition', 'TierAccount', 'ProtectionObligation',
    'MarginCall', 'LiquidationEvent', 'PoolEvent', 'StateChange', 'UpdateOrigin',
    'PendingUpdate', 'AppliedUpdate', 'PolicyType', 'ObligationStatus', 'MarginCallStatus',
    'HealthStatus', 'ResolutionMethod', 'ExecuteResult', 'OriginType',
    'build_update', 'empty_update', 'merge_updates', 'derive_id', 'allocate_pro_rata',
    'INSURANCE_FUND', 'DEFAULT_ASSET',
    'EVENT_MARGIN_CALL_ISSUED', 'EVENT_MARGIN_CALL_ESCALATED', 'EVENT_MARGIN_CALL_UPDATED',
    'EVENT_MARGIN_CALL_RESOLVED', 'EVENT_PROVIDER_LIQUIDATED', 'EVENT_OBLIGATION_TRANSFERRED',
    # Errors
    'PoolError', 'ValidationError', 'CapacityError', 'NoMatchingTier',
    'InsufficientTierCapital', 'StateConflictError', 'ExternalDependencyError',
    'PriceUnavailable', 'PriceStale', 'CollaboratorError', 'InvariantViolation',
    'MutationHalted',
    # Store
    'PoolStore', 'StagedView',
    # Tiers and config
    'RiskTierRegistry', 'default_tiers', 'EngineConfig',
    # Components
    'HealthReport', 'ProtectionRequest', 'ReservationPlan', 'WithdrawalResult',
    'PremiumSplit', 'ExerciseResult',
    'calculate_provider_health', 'calculate_required_collateral', 'calculate_premium_split',
    'calculate_payout', 'collateral_needed', 'assess_provider', 'plan_reservation',
    'compute_reservation', 'compute_deposit', 'compute_withdrawal', 'check_withdrawal',
    'compute_yield_claim', 'compute_tier_migration', 'compute_premium_distribution',
    'compute_margin_call_transition', 'compute_call_resolution', 'compute_liquidation',
    'compute_expiry', 'compute_exercise', 'compute_cancellation', 'reconcile_tier_accounts',
    # Prices and premiums
    'PriceQuote', 'PriceSource', 'StaticPriceSource', 'TimeSeriesPriceSource',
    'GuardedPriceSource', 'annualized_volatility',
    'FixedRatePremiumCalculator', 'BlackScholesPremiumCalculator',
    # Collaborators
    'PolicyRegistry', 'InsuranceFund', 'PremiumCalculator', 'Notifier',
    'InMemoryPolicyRegistry', 'InMemoryInsuranceFund', 'RecordingNotifier', 'LoggingNotifier',
    # Scheduling and engine
    'Event', 'EventScheduler', 'expiry_event',
    'ProtectionEngine', 'SweepReport',
]

__version__ = '1.0.0'
