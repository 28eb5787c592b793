"""
Core types and pure functions for the protection pool engine.

This module provides the foundational data structures and protocols for the pool:
1. Protocols: PoolView for read-only access to pool state
2. Immutable data structures: RiskTier, ProviderPosition, TierAccount,
   ProtectionObligation, MarginCall, LiquidationEvent
3. Update records: StateChange, PendingUpdate, AppliedUpdate
4. Exceptions: PoolError and the engine's error taxonomy
5. Enums: closed sets of statuses, policy types and resolution methods
6. Allocation helpers: integer pro-rata splitting without value leakage

All functions in this module are pure and operate on read-only views.
No function can mutate pool state directly; PoolStore.apply() is the only mutator.
"""

from __future__ import annotations
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_EVEN, ROUND_FLOOR, ROUND_CEILING, DefaultContext, getcontext
from enum import Enum
import hashlib
from typing import (
    Dict, List, Set, Optional, Any, Protocol, Tuple, FrozenSet,
    Iterable, Mapping, runtime_checkable,
)


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# Prices, ratios and percentages are Decimal; collateral amounts are integers
# in the smallest unit of their asset. The global context is configured once
# at import time so that every ratio is computed identically.
#
# PRECONDITION: No other code should modify the global Decimal context.
# Contexts are per thread; new threads (sweep workers, price fetches) copy
# DefaultContext, so it is configured too.
#
for _POOL_DECIMAL_CONTEXT in (getcontext(), DefaultContext):
    _POOL_DECIMAL_CONTEXT.prec = 50
    _POOL_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Counterparty id used for the Insurance Fund inside obligation counterparty sets.
INSURANCE_FUND = "insurance_fund"

# Collateral asset used when a caller does not name one.
DEFAULT_ASSET = "BTC"

# Epsilon for Decimal comparisons.
QUANTITY_EPSILON = Decimal("1e-12")

# Ratio reported for a provider with no outstanding obligations.
INFINITE_RATIO = Decimal("Infinity")

# Liquidation fraction policy (governance-configurable within the bounds).
DEFAULT_LIQUIDATION_FRACTION = Decimal("0.5")
MIN_LIQUIDATION_FRACTION = Decimal("0.2")
MAX_LIQUIDATION_FRACTION = Decimal("0.8")

DAYS_PER_YEAR = 365

# Table names used by StateChange records
TABLE_POSITIONS = "provider_positions"
TABLE_OBLIGATIONS = "obligations"
TABLE_MARGIN_CALLS = "margin_calls"
TABLE_REMAINDER_POOLS = "remainder_pools"
TABLE_PLATFORM_FEES = "platform_fees"

TABLES = (
    TABLE_POSITIONS,
    TABLE_OBLIGATIONS,
    TABLE_MARGIN_CALLS,
    TABLE_REMAINDER_POOLS,
    TABLE_PLATFORM_FEES,
)

# Notification kinds carried by PoolEvent
EVENT_MARGIN_CALL_ISSUED = "margin_call_issued"
EVENT_MARGIN_CALL_ESCALATED = "margin_call_escalated"
EVENT_MARGIN_CALL_UPDATED = "margin_call_updated"
EVENT_MARGIN_CALL_RESOLVED = "margin_call_resolved"
EVENT_PROVIDER_LIQUIDATED = "provider_liquidated"
EVENT_OBLIGATION_TRANSFERRED = "obligation_transferred"


# ============================================================================
# TYPE ALIASES
# ============================================================================

# Mapping from asset symbol to an integer amount in its smallest unit.
AssetAmounts = Dict[str, int]

# Mapping from asset symbol to its current price.
PriceMap = Mapping[str, Decimal]

# Key of a provider position: (provider_id, tier)
PositionKey = Tuple[str, str]


# ============================================================================
# ENUMS
# ============================================================================

class PolicyType(Enum):
    """Direction of protection bought: PUT protects downside, CALL upside."""
    PUT = "PUT"
    CALL = "CALL"


class ObligationStatus(Enum):
    """
    Lifecycle of a protection obligation.

    ACTIVE is the only non-terminal status. Every other status is reached
    exactly once and never left.
    """
    ACTIVE = "Active"
    EXERCISED = "Exercised"
    EXPIRED = "Expired"
    CANCELED = "Canceled"
    TRANSFERRED = "Transferred"

    @property
    def is_terminal(self) -> bool:
        return self is not ObligationStatus.ACTIVE


class MarginCallStatus(Enum):
    ACTIVE = "Active"
    RESOLVED = "Resolved"
    LIQUIDATED = "Liquidated"


class HealthStatus(Enum):
    """Collateral health classification, ordered by severity."""
    HEALTHY = "Healthy"
    WARNING = "Warning"
    UNDER_COLLATERALIZED = "UnderCollateralized"

    @property
    def severity(self) -> int:
        return _HEALTH_SEVERITY[self]


_HEALTH_SEVERITY = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.WARNING: 1,
    HealthStatus.UNDER_COLLATERALIZED: 2,
}


class ResolutionMethod(Enum):
    """How an active margin call was resolved."""
    ADD_COLLATERAL = "add_collateral"
    MIGRATE_TIER = "migrate_tier"
    SELF_LIQUIDATE = "self_liquidate"
    PRICE_RECOVERY = "price_recovery"


class ExecuteResult(Enum):
    """
    Outcome of applying a PendingUpdate.

    APPLIED: Update was validated and applied to the store.
    ALREADY_APPLIED: Update intent was previously processed (idempotent behavior).

    Failed applies raise (StateConflictError, InvariantViolation, ...) rather
    than returning a status, so the caller can decide whether to retry.
    """
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"


class OriginType(Enum):
    """Classification of where an update originated."""
    PROVIDER = "provider"        # Provider-initiated (deposit, withdrawal, resolution)
    BUYER = "buyer"              # Protection purchase
    MONITOR = "monitor"          # Health sweep / margin-call state machine
    LIFECYCLE = "lifecycle"      # Expiry, exercise, cancellation
    SYSTEM = "system"            # Setup and administrative operations


# ============================================================================
# EXCEPTIONS
# ============================================================================

class PoolError(Exception):
    """Base exception for all protection pool errors."""
    pass


class ValidationError(PoolError, ValueError):
    """Raised for malformed or out-of-bound input, before any state is touched."""
    pass


class CapacityError(PoolError):
    """Raised when a request cannot be served with the current tier capital."""
    pass


class NoMatchingTier(CapacityError):
    """Raised when no active tier accepts the request's protected value and duration."""
    pass


class InsufficientTierCapital(CapacityError):
    """Raised when the selected tier lacks unlocked capital for the required collateral."""

    def __init__(self, tier: str, required: int, available: int):
        super().__init__(
            f"Tier '{tier}' has {available} available, {required} required"
        )
        self.tier = tier
        self.required = required
        self.available = available


class StateConflictError(PoolError):
    """Raised when state changed underneath an update, or a lock could not be taken in time."""
    pass


class ExternalDependencyError(PoolError):
    """Raised when a collaborator (price source, registry, fund) fails."""
    pass


class PriceUnavailable(ExternalDependencyError):
    """Raised when no price (not even a last known one) is available for an asset."""
    pass


class PriceStale(ExternalDependencyError):
    """Raised when an operation needs a fresh price and only a stale one is available."""
    pass


class CollaboratorError(ExternalDependencyError):
    """Raised when the policy registry or insurance fund rejects a call."""
    pass


class InvariantViolation(PoolError):
    """Raised when a consistency check fails. Affected providers/tiers are halted."""
    pass


class MutationHalted(InvariantViolation):
    """Raised when an update touches a provider or tier halted by an earlier violation."""
    pass


# ============================================================================
# COERCION HELPERS
# ============================================================================

def to_decimal(value: Any) -> Decimal:
    """Convert int/float/str to Decimal via str() to avoid binary float artifacts."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _check_amount(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer amount, got {type(value).__name__}")


def _freeze_amounts(name: str, amounts: Mapping[str, int]) -> Dict[str, int]:
    """Copy an asset->amount mapping, dropping zero entries so equal balances compare equal."""
    frozen = {}
    for asset, amount in amounts.items():
        _check_amount(f"{name}[{asset}]", amount)
        if amount != 0:
            frozen[asset] = amount
    return frozen


def floor_decimal(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_FLOOR))


def ceil_decimal(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_CEILING))


# ============================================================================
# POOL RECORDS
# ============================================================================

@dataclass(frozen=True, slots=True)
class RiskTier:
    """
    Named bucket of pooled capital with its own risk/return parameters.

    Immutable; only governance replaces a tier (RiskTierRegistry.update_tier).

    Attributes:
        name: Tier identifier (e.g. "balanced")
        min_value_pct: Lowest protected_value / current_price accepted
        max_value_pct: Highest protected_value / current_price accepted
        premium_multiplier: Applied by the premium calculator to the base rate
        max_duration: Longest protection period accepted
        min_collateralization_ratio: Ratio below which providers are under-collateralized
        warning_buffer_pct: Width of the warning band above the minimum ratio
        active: Inactive tiers accept no new obligations or deposits
    """
    name: str
    min_value_pct: Decimal
    max_value_pct: Decimal
    premium_multiplier: Decimal
    max_duration: timedelta
    min_collateralization_ratio: Decimal
    warning_buffer_pct: Decimal = Decimal("0.1")
    active: bool = True

    def __post_init__(self):
        for name in ('min_value_pct', 'max_value_pct', 'premium_multiplier',
                     'min_collateralization_ratio', 'warning_buffer_pct'):
            object.__setattr__(self, name, to_decimal(getattr(self, name)))
        if not self.name or not self.name.strip():
            raise ValidationError("RiskTier name cannot be empty")
        if self.min_value_pct <= 0:
            raise ValidationError(f"Tier {self.name}: min_value_pct must be positive")
        if self.min_value_pct >= self.max_value_pct:
            raise ValidationError(
                f"Tier {self.name}: min_value_pct ({self.min_value_pct}) must be "
                f"below max_value_pct ({self.max_value_pct})"
            )
        if self.premium_multiplier <= 0:
            raise ValidationError(f"Tier {self.name}: premium_multiplier must be positive")
        if self.max_duration <= timedelta(0):
            raise ValidationError(f"Tier {self.name}: max_duration must be positive")
        if self.min_collateralization_ratio < Decimal("1"):
            raise ValidationError(
                f"Tier {self.name}: min_collateralization_ratio must be at least 100%"
            )
        if self.warning_buffer_pct < 0:
            raise ValidationError(f"Tier {self.name}: warning_buffer_pct cannot be negative")

    @property
    def width(self) -> Decimal:
        return self.max_value_pct - self.min_value_pct

    def accepts(self, protected_value_pct: Decimal, duration: timedelta) -> bool:
        """True if this tier is active and covers the value percentage and duration."""
        return (
            self.active
            and self.min_value_pct <= protected_value_pct <= self.max_value_pct
            and duration <= self.max_duration
        )


@dataclass(frozen=True, slots=True)
class ProviderPosition:
    """
    One provider's capital in one tier.

    Keyed by (provider_id, tier). Amounts are per asset, integer smallest
    units. Zero entries are dropped on construction. The locked <= deposited
    invariant is enforced by PoolStore.apply(), not here, so that a violating
    update can be detected and reported as an InvariantViolation.
    """
    provider_id: str
    tier: str
    deposited: Mapping[str, int] = field(default_factory=dict)
    locked: Mapping[str, int] = field(default_factory=dict)
    yield_accrued: Mapping[str, int] = field(default_factory=dict)
    yield_withdrawn: Mapping[str, int] = field(default_factory=dict)
    last_update: Optional[datetime] = None

    def __post_init__(self):
        if not self.provider_id or not self.provider_id.strip():
            raise ValidationError("ProviderPosition provider_id cannot be empty")
        object.__setattr__(self, 'deposited', _freeze_amounts('deposited', self.deposited))
        object.__setattr__(self, 'locked', _freeze_amounts('locked', self.locked))
        object.__setattr__(self, 'yield_accrued', _freeze_amounts('yield_accrued', self.yield_accrued))
        object.__setattr__(self, 'yield_withdrawn', _freeze_amounts('yield_withdrawn', self.yield_withdrawn))

    @property
    def key(self) -> PositionKey:
        return (self.provider_id, self.tier)

    def deposited_of(self, asset: str) -> int:
        return self.deposited.get(asset, 0)

    def locked_of(self, asset: str) -> int:
        return self.locked.get(asset, 0)

    def available(self, asset: str) -> int:
        """Unlocked capital: deposited - locked."""
        return self.deposited_of(asset) - self.locked_of(asset)

    def assets(self) -> Set[str]:
        return set(self.deposited) | set(self.locked) | set(self.yield_accrued)

    def adjust(
        self,
        asset: str,
        timestamp: Optional[datetime],
        deposited: int = 0,
        locked: int = 0,
        yield_accrued: int = 0,
        yield_withdrawn: int = 0,
    ) -> ProviderPosition:
        """Return a new position with the given deltas added for one asset."""
        def bump(amounts: Mapping[str, int], delta: int) -> Dict[str, int]:
            updated = dict(amounts)
            updated[asset] = updated.get(asset, 0) + delta
            return updated

        return ProviderPosition(
            provider_id=self.provider_id,
            tier=self.tier,
            deposited=bump(self.deposited, deposited),
            locked=bump(self.locked, locked),
            yield_accrued=bump(self.yield_accrued, yield_accrued),
            yield_withdrawn=bump(self.yield_withdrawn, yield_withdrawn),
            last_update=timestamp if timestamp is not None else self.last_update,
        )

    def is_empty(self) -> bool:
        return not self.deposited and not self.locked and not self.yield_accrued


@dataclass(frozen=True, slots=True)
class TierAccount:
    """Aggregate of every ProviderPosition in a tier, for one asset."""
    tier: str
    asset: str
    total: int = 0
    locked: int = 0
    active_obligation_count: int = 0

    @property
    def available(self) -> int:
        return self.total - self.locked

    @property
    def utilization(self) -> Decimal:
        if self.total == 0:
            return Decimal("0")
        return Decimal(self.locked) / Decimal(self.total)


@dataclass(frozen=True, slots=True)
class ProtectionObligation:
    """
    Collateral-relevant record of one protection policy.

    The policy itself lives in the external policy registry; this record
    carries the fields the engine needs to keep it collateralized.

    Attributes:
        obligation_id: Id issued by the policy registry
        owner: Buyer of the protection
        policy_type: PUT or CALL
        asset: Collateral asset (and underlying) of the policy
        protected_value: Strike price
        protected_amount: Underlying amount protected, smallest units
        premium: Premium quoted for the policy, smallest units
        tier: Tier the request was classified into
        reserved: Collateral reserved at creation
        allocations: provider_id -> units of `reserved` that provider backs
        counterparty_set: Providers (and possibly the fund) on the other side
        created_at / expires_at: Protection period
        status: ObligationStatus
        fund_share: Units of `reserved` taken over by the insurance fund
    """
    obligation_id: str
    owner: str
    policy_type: PolicyType
    asset: str
    protected_value: Decimal
    protected_amount: int
    premium: int
    tier: str
    reserved: int
    allocations: Mapping[str, int]
    counterparty_set: FrozenSet[str]
    created_at: datetime
    expires_at: datetime
    status: ObligationStatus = ObligationStatus.ACTIVE
    fund_share: int = 0

    def __post_init__(self):
        object.__setattr__(self, 'protected_value', to_decimal(self.protected_value))
        object.__setattr__(self, 'allocations', _freeze_amounts('allocations', self.allocations))
        object.__setattr__(self, 'counterparty_set', frozenset(self.counterparty_set))
        _check_amount('protected_amount', self.protected_amount)
        _check_amount('premium', self.premium)
        _check_amount('reserved', self.reserved)
        _check_amount('fund_share', self.fund_share)

    @property
    def backed_units(self) -> int:
        """Collateral still locked by providers for this obligation."""
        return sum(self.allocations.values())

    @property
    def is_live(self) -> bool:
        """True while providers still hold collateral locked against this obligation."""
        return (
            self.status in (ObligationStatus.ACTIVE, ObligationStatus.TRANSFERRED)
            and self.backed_units > 0
        )

    def allocation_of(self, provider_id: str) -> int:
        return self.allocations.get(provider_id, 0)


@dataclass(frozen=True, slots=True)
class MarginCall:
    """
    Time-boxed demand for a provider to restore adequate collateral.

    deficit is a value (collateral value short of min_ratio * required_value),
    not an amount of any single asset.
    """
    call_id: str
    provider_id: str
    issued_at: datetime
    deadline: datetime
    deficit: Decimal
    current_ratio: Decimal
    min_ratio: Decimal
    severity: HealthStatus
    status: MarginCallStatus = MarginCallStatus.ACTIVE
    resolved_at: Optional[datetime] = None
    resolution: Optional[ResolutionMethod] = None

    def __post_init__(self):
        for name in ('deficit', 'current_ratio', 'min_ratio'):
            object.__setattr__(self, name, to_decimal(getattr(self, name)))

    @property
    def is_active(self) -> bool:
        return self.status is MarginCallStatus.ACTIVE


@dataclass(frozen=True, slots=True)
class LiquidationEvent:
    """Append-only audit record of a (forced or voluntary) partial liquidation."""
    event_id: str
    provider_id: str
    liquidated_amount: Mapping[str, int]
    remaining_amount: Mapping[str, int]
    liquidation_price: Mapping[str, Decimal]
    obligations_transferred: Tuple[str, ...]
    timestamp: datetime
    fraction: Decimal
    call_id: Optional[str] = None
    voluntary: bool = False


@dataclass(frozen=True, slots=True)
class PoolEvent:
    """
    Notification payload surfaced to the affected provider after an update applies.

    Attributes:
        kind: One of the EVENT_* constants
        provider_id: Provider the event concerns
        timestamp: Pool time of the update
        details: Frozen (key, value) pairs
    """
    kind: str
    provider_id: str
    timestamp: datetime
    details: Tuple[Tuple[str, Any], ...] = ()

    @property
    def details_dict(self) -> Dict[str, Any]:
        return dict(self.details)


# ============================================================================
# STATE CHANGE
# ============================================================================

@dataclass(frozen=True, slots=True)
class StateChange:
    """
    Before/after record of one row in one table.

    old is None when the row is created. PoolStore.apply() rejects the whole
    update if old no longer matches the stored row (optimistic concurrency).
    """
    table: str
    key: Any
    old: Any
    new: Any

    def changed_fields(self) -> Dict[str, Tuple[Any, Any]]:
        """Fields that differ between old and new (records are compared field by field)."""
        if is_dataclass(self.new) and (self.old is None or type(self.old) is type(self.new)):
            changes = {}
            for f in fields(self.new):
                old_val = getattr(self.old, f.name) if self.old is not None else None
                new_val = getattr(self.new, f.name)
                if old_val != new_val:
                    changes[f.name] = (old_val, new_val)
            return changes
        if self.old != self.new:
            return {'value': (self.old, self.new)}
        return {}


@dataclass(frozen=True, slots=True)
class UpdateOrigin:
    """
    Immutable record of an update's origin for audit purposes.

    Attributes:
        origin_type: Classification of the origin source
        source_id: Operation that built the update (e.g. "reserve", "sweep")
        subject: Provider, tier or obligation the update is about
    """
    origin_type: OriginType
    source_id: str
    subject: Optional[str] = None

    def __repr__(self) -> str:
        parts = [f"{self.origin_type.value}:{self.source_id}"]
        if self.subject:
            parts.append(f"subject={self.subject}")
        return f"Origin({', '.join(parts)})"


# ============================================================================
# CANONICAL SERIALIZATION
# ============================================================================

def _normalize_decimal(d: Decimal) -> str:
    """
    Normalize a Decimal to a canonical string representation.

    Decimal("1.0") and Decimal("1.00") both become "1".
    """
    if d.is_infinite() or d.is_nan():
        return str(d)
    normalized = d.normalize()
    if normalized == normalized.to_integral_value():
        return str(int(normalized))
    return format(normalized, 'f')


def _canonicalize(value: Any) -> str:
    """
    Produce a canonical string representation of a value for hashing.

    Independent of dict insertion order, set iteration order and Decimal
    representation, so semantically equal updates hash identically.
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return f"E:{type(value).__name__}.{value.value}"
    if isinstance(value, Decimal):
        return f"D:{_normalize_decimal(value)}"
    if isinstance(value, (int, float)):
        return f"N:{value}"
    if isinstance(value, str):
        return f"S:{value}"
    if isinstance(value, datetime):
        return f"T:{value.isoformat()}"
    if isinstance(value, timedelta):
        return f"TD:{value.total_seconds()}"
    if is_dataclass(value) and not isinstance(value, type):
        body = {f.name: getattr(value, f.name) for f in fields(value)}
        return f"{type(value).__name__}{_canonicalize(body)}"
    if isinstance(value, Mapping):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        serialized = ",".join(f"{_canonicalize(k)}:{_canonicalize(v)}" for k, v in items)
        return f"{{{serialized}}}"
    if isinstance(value, (list, tuple)):
        serialized = ",".join(_canonicalize(item) for item in value)
        return f"[{serialized}]"
    if isinstance(value, (set, frozenset)):
        serialized = ",".join(_canonicalize(item) for item in sorted(value, key=str))
        return f"<{serialized}>"
    return f"R:{repr(value)}"


def _compute_intent_id(
    changes: Tuple[StateChange, ...],
    origin: UpdateOrigin,
    liquidations: Tuple[LiquidationEvent, ...] = (),
) -> str:
    """
    Compute a deterministic content hash for an update's intent.

    Based solely on the semantic content (changes, origin, liquidation
    records), never on wall-clock time. Used for idempotency: applying the
    same intent twice returns ALREADY_APPLIED.
    """
    content_parts = [f"origin:{origin.origin_type.value}:{origin.source_id}"]
    if origin.subject:
        content_parts.append(f"subject:{origin.subject}")

    for sc in sorted(changes, key=lambda c: (c.table, _canonicalize(c.key))):
        content_parts.append(
            f"change:{sc.table}|{_canonicalize(sc.key)}|"
            f"{_canonicalize(sc.old)}|{_canonicalize(sc.new)}"
        )
    for event in liquidations:
        content_parts.append(f"liquidation:{_canonicalize(event)}")

    content = "|".join(content_parts)
    return hashlib.sha256(content.encode()).hexdigest()[:16]


def derive_id(prefix: str, *parts: Any) -> str:
    """Deterministic record id from its defining parts (e.g. margin call ids)."""
    content = "|".join(_canonicalize(p) for p in parts)
    return f"{prefix}-{hashlib.sha256(content.encode()).hexdigest()[:12]}"


# ============================================================================
# PENDING / APPLIED UPDATES
# ============================================================================

@dataclass(frozen=True, slots=True)
class PendingUpdate:
    """
    An update specification before application - represents INTENT.

    Built by pure compute_* functions and submitted to PoolStore.apply().

    Attributes:
        changes: Row changes (with old and new) across the pool tables
        origin: Who/what created this update and why
        timestamp: Pool time when the update was built
        liquidations: LiquidationEvents to append to the audit log
        notices: PoolEvents to surface to providers once applied
        intent_id: Content-addressable hash of the intent (auto-computed)
    """
    changes: Tuple[StateChange, ...]
    origin: UpdateOrigin
    timestamp: datetime
    liquidations: Tuple[LiquidationEvent, ...] = ()
    notices: Tuple[PoolEvent, ...] = ()
    intent_id: str = field(default="")

    def __post_init__(self):
        if not self.intent_id:
            object.__setattr__(
                self, 'intent_id',
                _compute_intent_id(self.changes, self.origin, self.liquidations),
            )

    def is_empty(self) -> bool:
        return not self.changes and not self.liquidations

    def changes_for(self, table: str) -> List[StateChange]:
        return [c for c in self.changes if c.table == table]

    def touched_providers(self) -> Set[str]:
        """Providers whose positions, calls or allocations this update changes."""
        providers = set()
        for c in self.changes:
            if c.table == TABLE_POSITIONS:
                providers.add(c.key[0])
            elif c.table == TABLE_MARGIN_CALLS:
                providers.add((c.new or c.old).provider_id)
            elif c.table == TABLE_OBLIGATIONS:
                for record in (c.old, c.new):
                    if record is not None:
                        providers.update(record.allocations)
        return providers

    def touched_tiers(self) -> Set[str]:
        tiers = set()
        for c in self.changes:
            if c.table == TABLE_POSITIONS:
                tiers.add(c.key[1])
            elif c.table == TABLE_OBLIGATIONS:
                tiers.add((c.new or c.old).tier)
            elif c.table == TABLE_REMAINDER_POOLS:
                tiers.add(c.key[0])
        return tiers

    def __repr__(self) -> str:
        return (
            f"PendingUpdate({len(self.changes)} changes, "
            f"{len(self.liquidations)} liquidations, {self.origin})"
        )


@dataclass(frozen=True, slots=True)
class AppliedUpdate:
    """
    An applied, immutable record of pool state changes - represents FACT.

    Attributes:
        changes / origin / timestamp / intent_id: copied from the PendingUpdate
        exec_id: Unique execution identifier (store + sequence + time)
        sequence_number: Monotonic sequence within the store
        execution_time: Pool time at which the update was applied
        liquidations / notices: copied from the PendingUpdate
    """
    changes: Tuple[StateChange, ...]
    origin: UpdateOrigin
    timestamp: datetime
    intent_id: str
    exec_id: str
    sequence_number: int
    execution_time: datetime
    liquidations: Tuple[LiquidationEvent, ...] = ()
    notices: Tuple[PoolEvent, ...] = ()


def build_update(
    view: PoolView,
    changes: Iterable[StateChange],
    origin: Optional[UpdateOrigin] = None,
    liquidations: Iterable[LiquidationEvent] = (),
    notices: Iterable[PoolEvent] = (),
) -> PendingUpdate:
    """
    Build a PendingUpdate stamped with the view's current time.

    This is the standard way to create updates.

    Example:
        def compute_touch(view, provider_id, tier):
            old = view.get_position(provider_id, tier)
            new = replace(old, last_update=view.current_time)
            change = StateChange(TABLE_POSITIONS, old.key, old, new)
            return build_update(view, [change])
    """
    if origin is None:
        origin = UpdateOrigin(OriginType.SYSTEM, "update")
    return PendingUpdate(
        changes=tuple(changes),
        origin=origin,
        timestamp=view.current_time,
        liquidations=tuple(liquidations),
        notices=tuple(notices),
    )


def empty_update(view: PoolView) -> PendingUpdate:
    """Create an empty PendingUpdate. Use when a compute function has nothing to do."""
    return PendingUpdate(
        changes=(),
        origin=UpdateOrigin(OriginType.SYSTEM, "noop"),
        timestamp=view.current_time,
    )


def merge_updates(
    view: PoolView,
    updates: Iterable[PendingUpdate],
    origin: UpdateOrigin,
) -> PendingUpdate:
    """
    Combine sequential updates into one atomic update.

    Each update must have been computed against the state left by the
    previous ones (e.g. through a StagedView). Successive changes to the same
    row are chained: the first old and the last new are kept.

    Raises:
        ValidationError: if a change does not start from the previous new.
    """
    merged: Dict[Tuple[str, str], StateChange] = {}
    order: List[Tuple[str, str]] = []
    liquidations: List[LiquidationEvent] = []
    notices: List[PoolEvent] = []
    for update in updates:
        for change in update.changes:
            slot = (change.table, _canonicalize(change.key))
            if slot in merged:
                previous = merged[slot]
                if previous.new != change.old:
                    raise ValidationError(
                        f"Cannot chain changes to {change.table}{change.key!r}: "
                        f"update was not computed on the previous result"
                    )
                merged[slot] = StateChange(change.table, change.key, previous.old, change.new)
            else:
                merged[slot] = change
                order.append(slot)
        liquidations.extend(update.liquidations)
        notices.extend(update.notices)
    changes = [merged[slot] for slot in order if merged[slot].old != merged[slot].new]
    return build_update(view, changes, origin, liquidations, notices)


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class PoolView(Protocol):
    """
    Read-only interface to pool state.

    Compute functions accept a PoolView to declare their read-only intent.
    PoolStore implements this protocol and also provides apply();
    StagedView overlays uncommitted changes; FakeView (tests) is immutable.
    """

    @property
    def current_time(self) -> datetime:
        """Return the current logical time of the pool."""
        ...

    def list_positions(self) -> List[ProviderPosition]:
        """Return every provider position, sorted by (provider_id, tier)."""
        ...

    def get_position(self, provider_id: str, tier: str) -> Optional[ProviderPosition]:
        ...

    def positions_for_provider(self, provider_id: str) -> List[ProviderPosition]:
        ...

    def positions_in_tier(self, tier: str) -> List[ProviderPosition]:
        ...

    def get_tier_account(self, tier: str, asset: str) -> TierAccount:
        """Return the tier aggregate for an asset (all zero if nothing is deposited)."""
        ...

    def list_obligations(self) -> List[ProtectionObligation]:
        ...

    def get_obligation(self, obligation_id: str) -> Optional[ProtectionObligation]:
        ...

    def obligations_for_provider(self, provider_id: str) -> List[ProtectionObligation]:
        """Return live obligations the provider currently backs, sorted by id."""
        ...

    def list_margin_calls(self) -> List[MarginCall]:
        ...

    def get_active_margin_call(self, provider_id: str) -> Optional[MarginCall]:
        ...

    def get_remainder(self, tier: str, asset: str) -> int:
        """Return the premium rounding residual carried for a tier."""
        ...

    def get_platform_fees(self, asset: str) -> int:
        ...

    def is_halted(self, provider_id: Optional[str] = None, tier: Optional[str] = None) -> bool:
        ...


# ============================================================================
# ALLOCATION HELPERS
# ============================================================================

def allocate_pro_rata(amount: int, weights: Mapping[str, int]) -> Dict[str, int]:
    """
    Split an integer amount across keys in proportion to integer weights.

    Uses the largest remainder method: every key first gets
    floor(amount * weight / total); the leftover units go one each to the
    keys with the largest fractional remainders (ties broken by key).
    The result sums to exactly `amount`, and no key receives more than its
    weight when amount <= sum(weights).

    Args:
        amount: Non-negative integer to split
        weights: key -> non-negative integer weight

    Returns:
        key -> share, only for keys with a non-zero share.

    Raises:
        ValueError: if amount is negative or exceeds the total weight.
    """
    if amount < 0:
        raise ValueError(f"Cannot allocate a negative amount: {amount}")
    total = sum(weights.values())
    if amount == 0:
        return {}
    if amount > total:
        raise ValueError(f"Cannot allocate {amount} across total weight {total}")

    shares: Dict[str, int] = {}
    remainders: List[Tuple[int, str]] = []
    for key in sorted(weights):
        weight = weights[key]
        if weight < 0:
            raise ValueError(f"Negative weight for {key}: {weight}")
        share, remainder = divmod(amount * weight, total)
        shares[key] = share
        remainders.append((remainder, key))

    leftover = amount - sum(shares.values())
    for _, key in sorted(remainders, key=lambda rk: (-rk[0], rk[1]))[:leftover]:
        shares[key] += 1

    return {k: v for k, v in shares.items() if v > 0}
