"""
store.py - Owned State Store for the Protection Pool

PoolStore is the central state manager of the engine.
It is the only module that mutates state, ensuring controlled and auditable changes.

Key responsibilities:
    - Implements the PoolView protocol for read-only access by pure functions
    - Applies PendingUpdates atomically (every change succeeds or none does)
    - Optimistic concurrency: every change's `old` must match the stored row
    - Maintains TierAccounts incrementally and reconciles them on every apply
    - Validates invariants before commit; violations halt the affected
      provider/tier instead of being repaired
    - Per-provider and per-tier locks acquired in a fixed order
    - Always logs - the update log is the audit trail
"""

from __future__ import annotations
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set, Tuple
import threading

from .core import (
    # Types
    ProviderPosition, TierAccount, ProtectionObligation, MarginCall,
    LiquidationEvent, PendingUpdate, AppliedUpdate, StateChange,
    ExecuteResult, ObligationStatus, PoolView,
    # Constants
    TABLES, TABLE_POSITIONS, TABLE_OBLIGATIONS, TABLE_MARGIN_CALLS,
    TABLE_REMAINDER_POOLS, TABLE_PLATFORM_FEES,
    # Exceptions
    ValidationError, StateConflictError, InvariantViolation, MutationHalted,
)
from .components.tier_accounts import (
    adjust_for_obligation, adjust_for_position, calculate_tier_accounts,
    reconcile_tier_accounts,
)
from .log import get_logger


logger = get_logger(__name__)

# (scope kind, scope key, message); scope kind is "provider", "tier" or None
Violation = Tuple[Optional[str], Optional[str], str]


class PoolStore:
    """
    Single-writer store for provider positions, obligations and margin calls.

    Implements the PoolView protocol, allowing the store to be passed to pure
    functions that access only read-only methods.

    Thread Safety:
        Reads and apply() are serialized by an internal state lock, so each
        read returns a consistent snapshot. Read-compute-apply sequences must
        hold the relevant provider/tier locks (see locked()) to avoid
        StateConflictError under contention.

    Example:
        store = PoolStore("main")
        update = compute_deposit(store, tiers, "alice", "balanced", 1_000)
        store.apply(update)
    """

    def __init__(
        self,
        name: str = "pool",
        initial_time: Optional[datetime] = None,
        lock_timeout: float = 5.0,
    ):
        """
        Create a store.

        Args:
            name: Store identifier (appears in exec ids)
            initial_time: Starting pool time (default: 1970-01-01)
            lock_timeout: Default seconds to wait for each lock in locked()
        """
        self.name = name
        self.lock_timeout = lock_timeout
        self.positions: Dict[Tuple[str, str], ProviderPosition] = {}
        self.obligations: Dict[str, ProtectionObligation] = {}
        self.margin_calls: Dict[str, MarginCall] = {}
        self.remainder_pools: Dict[Tuple[str, str], int] = {}
        self.platform_fees: Dict[str, int] = {}
        self.tier_accounts: Dict[Tuple[str, str], TierAccount] = {}
        self.liquidation_events: List[LiquidationEvent] = []
        self.seen_intent_ids: Set[str] = set()
        self.update_log: List[AppliedUpdate] = []
        self.halted_providers: Dict[str, str] = {}
        self.halted_tiers: Dict[str, str] = {}
        self._active_calls: Dict[str, str] = {}
        self._current_time: datetime = initial_time or datetime(1970, 1, 1)
        self._next_sequence: int = 0
        self._init_locks()

    def _init_locks(self) -> None:
        self._state_lock = threading.RLock()
        self._lock_registry = threading.Lock()
        self._provider_locks: Dict[str, threading.RLock] = {}
        self._tier_locks: Dict[str, threading.RLock] = {}

    # ========================================================================
    # PoolView PROTOCOL IMPLEMENTATION (read-only methods)
    # ========================================================================

    @property
    def current_time(self) -> datetime:
        return self._current_time

    def list_positions(self) -> List[ProviderPosition]:
        with self._state_lock:
            return [self.positions[k] for k in sorted(self.positions)]

    def get_position(self, provider_id: str, tier: str) -> Optional[ProviderPosition]:
        with self._state_lock:
            return self.positions.get((provider_id, tier))

    def positions_for_provider(self, provider_id: str) -> List[ProviderPosition]:
        with self._state_lock:
            return [p for k, p in sorted(self.positions.items()) if k[0] == provider_id]

    def positions_in_tier(self, tier: str) -> List[ProviderPosition]:
        with self._state_lock:
            return [p for k, p in sorted(self.positions.items()) if k[1] == tier]

    def get_tier_account(self, tier: str, asset: str) -> TierAccount:
        with self._state_lock:
            return self.tier_accounts.get((tier, asset), TierAccount(tier, asset))

    def list_obligations(self) -> List[ProtectionObligation]:
        with self._state_lock:
            return [self.obligations[k] for k in sorted(self.obligations)]

    def get_obligation(self, obligation_id: str) -> Optional[ProtectionObligation]:
        with self._state_lock:
            return self.obligations.get(obligation_id)

    def obligations_for_provider(self, provider_id: str) -> List[ProtectionObligation]:
        with self._state_lock:
            return [
                o for _, o in sorted(self.obligations.items())
                if o.is_live and o.allocation_of(provider_id) > 0
            ]

    def list_margin_calls(self) -> List[MarginCall]:
        with self._state_lock:
            return [self.margin_calls[k] for k in sorted(self.margin_calls)]

    def get_margin_call(self, call_id: str) -> Optional[MarginCall]:
        with self._state_lock:
            return self.margin_calls.get(call_id)

    def get_active_margin_call(self, provider_id: str) -> Optional[MarginCall]:
        with self._state_lock:
            call_id = self._active_calls.get(provider_id)
            return self.margin_calls.get(call_id) if call_id else None

    def active_margin_calls(self) -> List[MarginCall]:
        with self._state_lock:
            return [self.margin_calls[self._active_calls[p]] for p in sorted(self._active_calls)]

    def get_remainder(self, tier: str, asset: str) -> int:
        with self._state_lock:
            return self.remainder_pools.get((tier, asset), 0)

    def get_platform_fees(self, asset: str) -> int:
        with self._state_lock:
            return self.platform_fees.get(asset, 0)

    def is_halted(self, provider_id: Optional[str] = None, tier: Optional[str] = None) -> bool:
        with self._state_lock:
            return (
                (provider_id is not None and provider_id in self.halted_providers)
                or (tier is not None and tier in self.halted_tiers)
            )

    # ========================================================================
    # QUERIES
    # ========================================================================

    def list_providers(self) -> Set[str]:
        """Return every provider with a position."""
        with self._state_lock:
            return {k[0] for k in self.positions}

    def list_assets(self) -> Set[str]:
        """Return every asset deposited or protected in the pool."""
        with self._state_lock:
            assets = set()
            for position in self.positions.values():
                assets |= position.assets()
            for obligation in self.obligations.values():
                if obligation.is_live:
                    assets.add(obligation.asset)
            return assets

    def list_tier_accounts(self) -> List[TierAccount]:
        with self._state_lock:
            return [self.tier_accounts[k] for k in sorted(self.tier_accounts)]

    def verify_invariants(self) -> Dict[str, Any]:
        """
        Run every consistency check over the whole committed state.

        Returns:
            Dict with keys:
            - 'valid': bool - True if every invariant holds
            - 'violations': List[str] - Description of each violation

        Example:
            result = store.verify_invariants()
            assert result['valid'], result['violations']
        """
        with self._state_lock:
            violations = _find_violations(
                self.positions, self.obligations, self.margin_calls,
                self.remainder_pools, self.platform_fees, self.tier_accounts,
                providers={k[0] for k in self.positions},
                position_keys=set(self.positions),
                obligation_ids=set(self.obligations),
                account_keys=None,
            )
        return {
            'valid': not violations,
            'violations': [message for _, _, message in violations],
        }

    # ========================================================================
    # TIME MANAGEMENT
    # ========================================================================

    def advance_time(self, new_time: datetime) -> None:
        """
        Advance the pool's logical clock. Time can only move forward.

        Raises:
            ValueError: If new_time is before the current time
        """
        with self._state_lock:
            if new_time < self._current_time:
                raise ValueError(
                    f"Cannot move time backwards: {new_time} < {self._current_time}"
                )
            self._current_time = new_time

    # ========================================================================
    # LOCKING
    # ========================================================================

    def _named_lock(self, registry: Dict[str, threading.RLock], name: str) -> threading.RLock:
        with self._lock_registry:
            lock = registry.get(name)
            if lock is None:
                lock = registry[name] = threading.RLock()
            return lock

    @contextmanager
    def locked(
        self,
        tiers: Iterable[str] = (),
        providers: Iterable[str] = (),
        timeout: Optional[float] = None,
    ) -> Iterator[PoolStore]:
        """
        Hold the tier and provider locks for a read-compute-apply sequence.

        Locks are always taken tiers first, then providers, each in sorted
        order, so two callers can never wait on each other in a cycle.

        Raises:
            StateConflictError: If any lock is not acquired within timeout
        """
        wait = self.lock_timeout if timeout is None else timeout
        ordered = (
            [('tier', t, self._named_lock(self._tier_locks, t)) for t in sorted(set(tiers))]
            + [('provider', p, self._named_lock(self._provider_locks, p)) for p in sorted(set(providers))]
        )
        acquired = []
        try:
            for kind, name, lock in ordered:
                if not lock.acquire(timeout=wait):
                    logger.warning(
                        "lock timeout",
                        extra={"context": {"kind": kind, "key": name, "timeout": wait}},
                    )
                    raise StateConflictError(f"Timed out waiting for {kind} lock '{name}'")
                acquired.append(lock)
            yield self
        finally:
            for lock in reversed(acquired):
                lock.release()

    # ========================================================================
    # UPDATE APPLICATION (Mutating)
    # ========================================================================

    def _generate_exec_id(self, sequence: int) -> str:
        micros = int(self._current_time.timestamp() * 1_000_000)
        return f"exec:{self.name}:{sequence:012d}:{micros}"

    def _table(self, name: str) -> Dict[Any, Any]:
        return {
            TABLE_POSITIONS: self.positions,
            TABLE_OBLIGATIONS: self.obligations,
            TABLE_MARGIN_CALLS: self.margin_calls,
            TABLE_REMAINDER_POOLS: self.remainder_pools,
            TABLE_PLATFORM_FEES: self.platform_fees,
        }[name]

    def apply(self, pending: PendingUpdate) -> ExecuteResult:
        """
        Apply a PendingUpdate atomically.

        Every change is applied or none is. Application is idempotent: an
        update with an already-seen intent_id is not applied twice.

        Validation, in order:
        - halted providers/tiers (MutationHalted)
        - change shape and obligation status transitions (ValidationError)
        - each change's old row equals the stored row (StateConflictError)
        - invariants over the staged result, including TierAccount
          reconciliation (InvariantViolation; offenders are halted)

        Args:
            pending: PendingUpdate to apply

        Returns:
            ExecuteResult.APPLIED if applied
            ExecuteResult.ALREADY_APPLIED if the intent was applied before
        """
        if pending.is_empty():
            return ExecuteResult.APPLIED

        with self._state_lock:
            if pending.intent_id in self.seen_intent_ids:
                logger.info("update already applied", extra={"context": {"intent_id": pending.intent_id}})
                return ExecuteResult.ALREADY_APPLIED

            self._check_halted(pending)
            self._validate_changes(pending)

            # Stage: shallow copies of every table, then overlay the changes
            staged = {name: dict(self._table(name)) for name in TABLES}
            accounts = dict(self.tier_accounts)
            account_keys: Set[Tuple[str, str]] = set()
            for change in pending.changes:
                staged[change.table][change.key] = change.new
                if change.table == TABLE_POSITIONS:
                    delta = adjust_for_position(accounts, change.old, change.new)
                elif change.table == TABLE_OBLIGATIONS:
                    delta = adjust_for_obligation(accounts, change.old, change.new)
                else:
                    continue
                accounts.update(delta)
                account_keys.update(delta)
                record = change.new
                if change.table == TABLE_POSITIONS:
                    account_keys.update((record.tier, a) for a in record.assets())
                else:
                    account_keys.add((record.tier, record.asset))

            violations = _find_violations(
                staged[TABLE_POSITIONS], staged[TABLE_OBLIGATIONS], staged[TABLE_MARGIN_CALLS],
                staged[TABLE_REMAINDER_POOLS], staged[TABLE_PLATFORM_FEES], accounts,
                providers=pending.touched_providers(),
                position_keys={c.key for c in pending.changes_for(TABLE_POSITIONS)},
                obligation_ids={c.key for c in pending.changes_for(TABLE_OBLIGATIONS)},
                account_keys=account_keys,
            )
            if violations:
                self._halt(violations)
                raise InvariantViolation("; ".join(message for _, _, message in violations))

            # Commit
            self.positions = staged[TABLE_POSITIONS]
            self.obligations = staged[TABLE_OBLIGATIONS]
            self.margin_calls = staged[TABLE_MARGIN_CALLS]
            self.remainder_pools = staged[TABLE_REMAINDER_POOLS]
            self.platform_fees = staged[TABLE_PLATFORM_FEES]
            self.tier_accounts = {k: v for k, v in accounts.items() if v != TierAccount(*k)}
            for change in pending.changes_for(TABLE_MARGIN_CALLS):
                call = change.new
                if call.is_active:
                    self._active_calls[call.provider_id] = call.call_id
                elif self._active_calls.get(call.provider_id) == call.call_id:
                    del self._active_calls[call.provider_id]
            self.liquidation_events.extend(pending.liquidations)

            sequence = self._next_sequence
            self._next_sequence += 1
            applied = AppliedUpdate(
                changes=pending.changes,
                origin=pending.origin,
                timestamp=pending.timestamp,
                intent_id=pending.intent_id,
                exec_id=self._generate_exec_id(sequence),
                sequence_number=sequence,
                execution_time=self._current_time,
                liquidations=pending.liquidations,
                notices=pending.notices,
            )
            self.update_log.append(applied)
            self.seen_intent_ids.add(pending.intent_id)

        logger.debug(
            "update applied",
            extra={"context": {
                "exec_id": applied.exec_id,
                "intent_id": applied.intent_id,
                "origin": repr(applied.origin),
                "changes": len(applied.changes),
            }},
        )
        return ExecuteResult.APPLIED

    def _check_halted(self, pending: PendingUpdate) -> None:
        providers = sorted(pending.touched_providers() & set(self.halted_providers))
        tiers = sorted(pending.touched_tiers() & set(self.halted_tiers))
        if providers or tiers:
            raise MutationHalted(
                f"Mutations halted pending intervention: providers={providers} tiers={tiers}"
            )

    def _validate_changes(self, pending: PendingUpdate) -> None:
        seen = set()
        for change in pending.changes:
            if change.table not in TABLES:
                raise ValidationError(f"Unknown table '{change.table}'")
            slot = (change.table, change.key)
            if slot in seen:
                raise ValidationError(f"Row {change.table}{change.key!r} changed twice in one update")
            seen.add(slot)
            if change.new is None:
                raise ValidationError(f"Rows are never deleted: {change.table}{change.key!r}")

            default = 0 if change.table in (TABLE_REMAINDER_POOLS, TABLE_PLATFORM_FEES) else None
            current = self._table(change.table).get(change.key, default)
            if current != change.old:
                logger.info(
                    "stale state detected",
                    extra={"context": {"table": change.table, "key": change.key}},
                )
                raise StateConflictError(
                    f"{change.table}{change.key!r} changed since the update was built"
                )

            if change.table == TABLE_OBLIGATIONS and change.old is not None:
                old, new = change.old, change.new
                if old.status.is_terminal and new.status is not old.status:
                    raise ValidationError(
                        f"Obligation {old.obligation_id}: {old.status.value} is terminal"
                    )
                if (old.tier, old.asset, old.reserved) != (new.tier, new.asset, new.reserved):
                    raise ValidationError(
                        f"Obligation {old.obligation_id}: tier, asset and reserved are immutable"
                    )

    def _halt(self, violations: List[Violation]) -> None:
        for kind, key, message in violations:
            logger.error("invariant violation", extra={"context": {"scope": kind, "key": key, "detail": message}})
            if kind == 'provider':
                self.halted_providers.setdefault(key, message)
            elif kind == 'tier':
                self.halted_tiers.setdefault(key, message)

    def clear_halt(self, provider_id: Optional[str] = None, tier: Optional[str] = None) -> None:
        """Lift a halt after manual or governance intervention."""
        with self._state_lock:
            if provider_id is not None:
                self.halted_providers.pop(provider_id, None)
            if tier is not None:
                self.halted_tiers.pop(tier, None)
        logger.info("halt cleared", extra={"context": {"provider_id": provider_id, "tier": tier}})

    # ========================================================================
    # CLONING AND HISTORY
    # ========================================================================

    def clone(self) -> PoolStore:
        """
        Create an independent copy of this store.

        Records are immutable, so copying the tables is enough. The clone has
        its own locks.
        """
        with self._state_lock:
            cloned = PoolStore.__new__(PoolStore)
            cloned.name = self.name
            cloned.lock_timeout = self.lock_timeout
            cloned.positions = dict(self.positions)
            cloned.obligations = dict(self.obligations)
            cloned.margin_calls = dict(self.margin_calls)
            cloned.remainder_pools = dict(self.remainder_pools)
            cloned.platform_fees = dict(self.platform_fees)
            cloned.tier_accounts = dict(self.tier_accounts)
            cloned.liquidation_events = list(self.liquidation_events)
            cloned.seen_intent_ids = set(self.seen_intent_ids)
            cloned.update_log = list(self.update_log)
            cloned.halted_providers = dict(self.halted_providers)
            cloned.halted_tiers = dict(self.halted_tiers)
            cloned._active_calls = dict(self._active_calls)
            cloned._current_time = self._current_time
            cloned._next_sequence = self._next_sequence
            cloned._init_locks()
            return cloned

    def clone_at(self, target_time: datetime) -> PoolStore:
        """
        Reconstruct the store as it was at a past time.

        Walks the update log backwards, restoring each change's old row for
        updates applied after target_time.

        Raises:
            ValueError: If target_time is after the current time
        """
        if target_time > self._current_time:
            raise ValueError(f"Cannot clone the future: {target_time} > {self._current_time}")
        cloned = self.clone()
        kept = [u for u in cloned.update_log if u.execution_time <= target_time]
        undone = [u for u in cloned.update_log if u.execution_time > target_time]
        for update in reversed(undone):
            for change in reversed(update.changes):
                table = cloned._table(change.table)
                if change.old is None:
                    table.pop(change.key, None)
                else:
                    table[change.key] = change.old
            cloned.seen_intent_ids.discard(update.intent_id)
        undone_events = {e.event_id for u in undone for e in u.liquidations}
        cloned.liquidation_events = [
            e for e in cloned.liquidation_events if e.event_id not in undone_events
        ]
        cloned.update_log = kept
        cloned.tier_accounts = calculate_tier_accounts(
            cloned.positions.values(), cloned.obligations.values(),
        )
        cloned._active_calls = {
            c.provider_id: c.call_id for c in cloned.margin_calls.values() if c.is_active
        }
        cloned._current_time = target_time
        return cloned


# ============================================================================
# INVARIANT CHECKS
# ============================================================================

def _find_violations(
    positions: Dict[Tuple[str, str], ProviderPosition],
    obligations: Dict[str, ProtectionObligation],
    margin_calls: Dict[str, MarginCall],
    remainders: Dict[Tuple[str, str], int],
    fees: Dict[str, int],
    accounts: Dict[Tuple[str, str], TierAccount],
    providers: Set[str],
    position_keys: Set[Tuple[str, str]],
    obligation_ids: Set[str],
    account_keys: Optional[Set[Tuple[str, str]]],
) -> List[Violation]:
    """
    Check the invariants that the given rows participate in.

    - every amount is non-negative and locked <= deposited per asset
    - per provider and asset: sum of locked == sum of obligation allocations
    - per live obligation: sum of allocations + fund_share == reserved
    - released obligations hold no allocations
    - at most one active margin call per provider
    - remainder pools and fee accounts are non-negative
    - cached TierAccounts equal a full recomputation
    """
    violations: List[Violation] = []

    for key in sorted(position_keys):
        position = positions[key]
        for label, amounts in (
            ('deposited', position.deposited), ('locked', position.locked),
            ('yield_accrued', position.yield_accrued), ('yield_withdrawn', position.yield_withdrawn),
        ):
            for asset, amount in amounts.items():
                if amount < 0:
                    violations.append(('provider', key[0], f"{key}: {label}[{asset}]={amount} is negative"))
        for asset in sorted(set(position.locked)):
            if position.locked_of(asset) > position.deposited_of(asset):
                message = (
                    f"{key}: locked[{asset}]={position.locked_of(asset)} exceeds "
                    f"deposited[{asset}]={position.deposited_of(asset)}"
                )
                violations.append(('provider', key[0], message))
                violations.append(('tier', key[1], message))

    for provider_id in sorted(providers):
        locked: Dict[str, int] = {}
        for (p, _), position in positions.items():
            if p == provider_id:
                for asset, amount in position.locked.items():
                    locked[asset] = locked.get(asset, 0) + amount
        allocated: Dict[str, int] = {}
        for obligation in obligations.values():
            amount = obligation.allocation_of(provider_id)
            if amount:
                allocated[obligation.asset] = allocated.get(obligation.asset, 0) + amount
        for asset in sorted(set(locked) | set(allocated)):
            if locked.get(asset, 0) != allocated.get(asset, 0):
                violations.append((
                    'provider', provider_id,
                    f"provider {provider_id}: locked[{asset}]={locked.get(asset, 0)} but "
                    f"obligations allocate {allocated.get(asset, 0)}",
                ))
        active = [c for c in margin_calls.values() if c.provider_id == provider_id and c.is_active]
        if len(active) > 1:
            violations.append(('provider', provider_id, f"provider {provider_id} has {len(active)} active margin calls"))

    released = (ObligationStatus.EXPIRED, ObligationStatus.EXERCISED, ObligationStatus.CANCELED)
    for obligation_id in sorted(obligation_ids):
        obligation = obligations[obligation_id]
        negative = [p for p, a in obligation.allocations.items() if a < 0]
        if negative or obligation.fund_share < 0:
            violations.append(('tier', obligation.tier, f"obligation {obligation_id}: negative allocation"))
        if obligation.status in released and obligation.allocations:
            violations.append(('tier', obligation.tier, f"obligation {obligation_id}: released but still allocated"))
        if obligation.is_live and obligation.backed_units + obligation.fund_share != obligation.reserved:
            violations.append((
                'tier', obligation.tier,
                f"obligation {obligation_id}: allocations {obligation.backed_units} + fund "
                f"{obligation.fund_share} != reserved {obligation.reserved}",
            ))

    for (tier, asset), amount in sorted(remainders.items()):
        if amount < 0:
            violations.append(('tier', tier, f"remainder pool {tier}/{asset}={amount} is negative"))
    for asset, amount in sorted(fees.items()):
        if amount < 0:
            violations.append((None, None, f"platform fees[{asset}]={amount} is negative"))

    if account_keys is None or account_keys:
        tiers = None if account_keys is None else {k[0] for k in account_keys}
        mismatches = reconcile_tier_accounts(
            accounts,
            (p for p in positions.values() if tiers is None or p.tier in tiers),
            (o for o in obligations.values() if tiers is None or o.tier in tiers),
            keys=account_keys,
        )
        for (tier, _), message in sorted(mismatches.items()):
            violations.append(('tier', tier, message))

    return violations
