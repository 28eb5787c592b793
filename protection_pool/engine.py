"""
engine.py - Protection Engine

ProtectionEngine is the facade the rest of the protocol calls. It wires the
pure components to the store and the collaborators:

    read prices (GuardedPriceSource)
    -> take the tier/provider locks for the operation's scope
    -> compute a PendingUpdate against the store
    -> call collaborators that must agree before the change (insurance fund)
    -> PoolStore.apply()
    -> call collaborators that are told afterwards (registry, notifier)

StateConflictError is retried with exponential backoff; every other error
propagates with the store unchanged.

Execution order each tick(now):
1. Advance pool time
2. Expire obligations whose expiry is due
3. Sweep: recompute every provider's health, advance margin calls, and
   liquidate providers whose call deadline has passed
"""

from __future__ import annotations
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple
import time

from .core import (
    PoolView, PendingUpdate, ExecuteResult, MarginCall, ResolutionMethod, ObligationStatus,
    PoolError, ValidationError, StateConflictError, ExternalDependencyError,
    PriceStale, PriceUnavailable, CollaboratorError,
    INSURANCE_FUND,
    EVENT_MARGIN_CALL_ISSUED, EVENT_MARGIN_CALL_ESCALATED, EVENT_MARGIN_CALL_UPDATED,
    EVENT_MARGIN_CALL_RESOLVED, EVENT_PROVIDER_LIQUIDATED,
    empty_update, merge_updates,
)
from .config import EngineConfig
from .store import PoolStore
from .staging import StagedView
from .tiers import RiskTierRegistry
from .pricing_source import GuardedPriceSource, PriceSource
from .premium import BlackScholesPremiumCalculator
from .collaborators import (
    PolicyRegistry, InsuranceFund, PremiumCalculator, Notifier,
    InMemoryPolicyRegistry, InMemoryInsuranceFund, LoggingNotifier,
)
from .scheduled_events import EventScheduler, ACTION_EXPIRE, expiry_event
from .components.health import HealthReport, assess_provider
from .components.matching import ProtectionRequest, plan_reservation, compute_reservation
from .components.provider_ledger import (
    WithdrawalResult, compute_deposit, check_withdrawal, compute_yield_claim,
    compute_tier_migration, resolve_position_tier,
)
from .components.premium_settlement import PremiumSplit, compute_premium_distribution
from .components.margin_calls import (
    compute_margin_call_transition, compute_call_resolution, is_liquidation_due,
)
from .components.liquidation import compute_liquidation
from .components.settlement import (
    ExerciseResult, compute_expiry, compute_exercise, compute_cancellation,
)
from .log import get_logger


logger = get_logger(__name__)

Scope = Tuple[Set[str], Set[str]]  # (tiers, providers)
Prices = Tuple[Dict[str, Decimal], bool, Optional[datetime]]  # (prices, stale, oldest as_of)


@dataclass(frozen=True, slots=True)
class SweepReport:
    """
    Outcome of one health sweep.

    Provider ids are grouped by what happened to them; `deferred` lists
    providers whose due liquidation was postponed (stale price or insurance
    fund failure); `failed` maps providers to the error that stopped them.
    """
    timestamp: datetime
    stale: bool
    reports: Mapping[str, HealthReport] = field(default_factory=dict)
    issued: Tuple[str, ...] = ()
    escalated: Tuple[str, ...] = ()
    updated: Tuple[str, ...] = ()
    resolved: Tuple[str, ...] = ()
    liquidated: Tuple[str, ...] = ()
    deferred: Tuple[str, ...] = ()
    failed: Mapping[str, str] = field(default_factory=dict)


class ProtectionEngine:
    """
    Capital allocation, collateral health, margin call and liquidation engine.

    Example:
        engine = ProtectionEngine(StaticPriceSource({"BTC": Decimal("50000")}))
        engine.deposit("alice", "balanced", 3_000)
        oid = engine.classify_and_reserve(ProtectionRequest(
            owner="bob", protected_value=Decimal("43000"), protected_amount=300,
            duration=timedelta(days=30),
        ))
        engine.tick(later)
    """

    def __init__(
        self,
        price_source: PriceSource,
        store: Optional[PoolStore] = None,
        tiers: Optional[RiskTierRegistry] = None,
        premium_calculator: Optional[PremiumCalculator] = None,
        policy_registry: Optional[PolicyRegistry] = None,
        insurance_fund: Optional[InsuranceFund] = None,
        notifier: Optional[Notifier] = None,
        config: Optional[EngineConfig] = None,
        scheduler: Optional[EventScheduler] = None,
    ):
        self.config = config or EngineConfig()
        self.store = store or PoolStore(lock_timeout=self.config.lock_timeout_seconds)
        self.tiers = tiers or RiskTierRegistry()
        if isinstance(price_source, GuardedPriceSource):
            self.prices = price_source
        else:
            self.prices = GuardedPriceSource(
                price_source,
                timeout=self.config.price_timeout_seconds,
                max_age=self.config.max_price_age,
            )
        self.premium_calculator = premium_calculator or BlackScholesPremiumCalculator(
            self.prices, volatility_window=self.config.volatility_window,
        )
        self.policy_registry = policy_registry or InMemoryPolicyRegistry()
        self.insurance_fund = insurance_fund or InMemoryInsuranceFund()
        self.notifier = notifier or LoggingNotifier()
        self.scheduler = scheduler or EventScheduler()
        self.scheduler.register(ACTION_EXPIRE, lambda event: self.expire(event.subject))

    # ========================================================================
    # PLUMBING
    # ========================================================================

    @property
    def asset(self) -> str:
        return self.config.collateral_asset

    def _apply_with_retry(
        self,
        scope: Callable[[], Scope],
        build: Callable[[PoolView], Tuple[PendingUpdate, Any]],
        before_apply: Optional[Callable[[PendingUpdate], None]] = None,
    ) -> Tuple[ExecuteResult, PendingUpdate, Any]:
        """
        Run build() and apply its update under the locks of scope().

        The scope is recomputed on every attempt; an update that touches a
        provider or tier outside it is treated as a conflict and retried.
        """
        attempt = 0
        while True:
            tiers, providers = scope()
            try:
                with self.store.locked(tiers, providers):
                    update, payload = build(self.store)
                    if update.is_empty():
                        return ExecuteResult.APPLIED, update, payload
                    outside = (update.touched_providers() - providers, update.touched_tiers() - tiers)
                    if outside[0] or outside[1]:
                        raise StateConflictError(
                            f"Update reaches outside its lock scope: providers={sorted(outside[0])} "
                            f"tiers={sorted(outside[1])}"
                        )
                    if before_apply is not None:
                        before_apply(update)
                    result = self.store.apply(update)
                break
            except StateConflictError as exc:
                attempt += 1
                if attempt > self.config.max_conflict_retries:
                    logger.warning(
                        "conflict retries exhausted",
                        extra={"context": {"attempts": attempt, "error": str(exc)}},
                    )
                    raise
                delay = self.config.retry_backoff_seconds * (2 ** (attempt - 1))
                logger.info(
                    "state conflict, retrying",
                    extra={"context": {"attempt": attempt, "delay": delay, "error": str(exc)}},
                )
                time.sleep(delay)

        if result is ExecuteResult.APPLIED:
            self._publish(update)
        return result, update, payload

    def _publish(self, update: PendingUpdate) -> None:
        for notice in update.notices:
            try:
                self.notifier.notify(notice)
            except Exception:
                logger.exception(
                    "notifier failed",
                    extra={"context": {"kind": notice.kind, "provider_id": notice.provider_id}},
                )

    def _quote_prices(self, assets: Iterable[str], require_fresh: bool = False) -> Prices:
        """
        Current prices for the assets.

        Raises:
            PriceUnavailable: no price, not even a last known one
            PriceStale: require_fresh and some price is stale
        """
        now = self.store.current_time
        prices: Dict[str, Decimal] = {}
        stale = False
        oldest: Optional[datetime] = None
        for asset in sorted(set(assets)):
            quote = self.prices.get_price(asset, now)
            if quote.stale and require_fresh:
                raise PriceStale(f"Price for {asset} is stale (as of {quote.as_of})")
            prices[asset] = quote.price
            stale = stale or quote.stale
            oldest = quote.as_of if oldest is None else min(oldest, quote.as_of)
        return prices, stale, oldest

    def _provider_assets(self, provider_id: str) -> Set[str]:
        assets = set()
        for position in self.store.positions_for_provider(provider_id):
            assets |= set(position.deposited) | set(position.locked)
        for obligation in self.store.obligations_for_provider(provider_id):
            assets.add(obligation.asset)
        return assets or {self.asset}

    def _tier_scope(self, tier: str) -> Callable[[], Scope]:
        def scope() -> Scope:
            return {tier}, {p.provider_id for p in self.store.positions_in_tier(tier)}
        return scope

    def _provider_scope(self, provider_id: str, extra_tiers: Iterable[str] = ()) -> Callable[[], Scope]:
        """Provider, its positions' tiers, and every obligation (and co-provider) it backs."""
        def scope() -> Scope:
            tiers = set(extra_tiers) | {p.tier for p in self.store.positions_for_provider(provider_id)}
            providers = {provider_id}
            for obligation in self.store.obligations_for_provider(provider_id):
                tiers.add(obligation.tier)
                providers.update(obligation.allocations)
            return tiers, providers
        return scope

    def _obligation_scope(self, obligation_id: str) -> Callable[[], Scope]:
        def scope() -> Scope:
            obligation = self.store.get_obligation(obligation_id)
            if obligation is None:
                return set(), set()
            tiers = {obligation.tier}
            providers = set(obligation.allocations)
            for provider_id in providers:
                tiers |= {p.tier for p in self.store.positions_for_provider(provider_id)}
            return tiers, providers
        return scope

    # ========================================================================
    # PROTECTION LIFECYCLE
    # ========================================================================

    def classify_and_reserve(self, request: ProtectionRequest) -> str:
        """
        Classify a request, reserve its collateral and distribute its premium.

        Capacity is checked before any collaborator is called. The reservation
        and the premium distribution are applied as one update; if it fails
        after the policy registry issued an id, the policy is marked canceled.

        Returns:
            obligation id

        Raises:
            NoMatchingTier / InsufficientTierCapital: nothing reserved
            PriceStale / PriceUnavailable: no fresh price for the asset
        """
        prices, _, _ = self._quote_prices([request.asset], require_fresh=True)
        price = request.current_price if request.current_price is not None else prices[request.asset]
        tiers = self.tiers.snapshot()

        plan = plan_reservation(self.store, tiers, request, price)
        premium = self.premium_calculator.quote(
            tiers[plan.tier], request.protected_value, request.protected_amount,
            request.duration, request.policy_type, price, request.asset, self.store.current_time,
        )
        obligation_id = self.policy_registry.create_obligation(
            request.owner, request.policy_type, request.asset, request.protected_value,
            request.protected_amount, premium, self.store.current_time + request.duration,
        )

        fee_pct = self.config.platform_fee_pct

        def build(view: PoolView):
            reservation = compute_reservation(view, tiers, request, obligation_id, premium, price)
            if premium <= 0:
                return reservation, None
            staged = StagedView(view).with_update(reservation)
            distribution, split = compute_premium_distribution(
                staged, plan.tier, premium, fee_pct, request.asset,
            )
            return merge_updates(view, [reservation, distribution], reservation.origin), split

        try:
            self._apply_with_retry(self._tier_scope(plan.tier), build)
        except PoolError:
            logger.warning("reservation failed, canceling policy", extra={"context": {"obligation_id": obligation_id}})
            self.policy_registry.mark_canceled(obligation_id)
            raise

        obligation = self.store.get_obligation(obligation_id)
        self.scheduler.schedule(expiry_event(obligation_id, obligation.expires_at))
        logger.info(
            "obligation reserved",
            extra={"context": {
                "obligation_id": obligation_id, "tier": plan.tier,
                "reserved": plan.required_collateral, "premium": premium,
            }},
        )
        return obligation_id

    def distribute_premium(self, tier: str, amount: int, asset: Optional[str] = None) -> PremiumSplit:
        asset = asset or self.asset
        fee_pct = self.config.platform_fee_pct

        def build(view: PoolView):
            return compute_premium_distribution(view, tier, amount, fee_pct, asset)

        _, _, split = self._apply_with_retry(self._tier_scope(tier), build)
        return split

    def _reached(self, result: ExecuteResult, obligation_id: str, status: ObligationStatus) -> bool:
        """True when this call committed the obligation into status."""
        if result is not ExecuteResult.APPLIED:
            return False
        obligation = self.store.get_obligation(obligation_id)
        return obligation is not None and obligation.status is status

    def expire(self, obligation_id: str) -> ExecuteResult:
        result, update, _ = self._apply_with_retry(
            self._obligation_scope(obligation_id),
            lambda view: (compute_expiry(view, obligation_id), None),
        )
        if update.is_empty():
            return result
        if self._reached(result, obligation_id, ObligationStatus.EXPIRED):
            self.policy_registry.mark_expired(obligation_id)
        logger.info("obligation expired", extra={"context": {"obligation_id": obligation_id}})
        return result

    def exercise(self, obligation_id: str, settlement_price: Decimal) -> ExerciseResult:
        result, _, exercised = self._apply_with_retry(
            self._obligation_scope(obligation_id),
            lambda view: compute_exercise(view, obligation_id, settlement_price),
        )
        if self._reached(result, obligation_id, ObligationStatus.EXERCISED):
            self.policy_registry.mark_exercised(obligation_id)
        logger.info(
            "obligation exercised",
            extra={"context": {
                "obligation_id": obligation_id, "payout": exercised.payout,
                "fund_payment": exercised.fund_payment, "shortfalls": exercised.shortfalls,
            }},
        )
        return exercised

    def cancel(self, obligation_id: str) -> ExecuteResult:
        result, _, _ = self._apply_with_retry(
            self._obligation_scope(obligation_id),
            lambda view: (compute_cancellation(view, obligation_id), None),
        )
        if self._reached(result, obligation_id, ObligationStatus.CANCELED):
            self.policy_registry.mark_canceled(obligation_id)
        return result

    # ========================================================================
    # PROVIDER OPERATIONS
    # ========================================================================

    def _prices_for_resolution(self, provider_id: str) -> Optional[Prices]:
        try:
            return self._quote_prices(self._provider_assets(provider_id))
        except ExternalDependencyError as exc:
            logger.warning(
                "no price for margin call resolution",
                extra={"context": {"provider_id": provider_id, "error": str(exc)}},
            )
            return None

    def _with_resolution(
        self,
        view: PoolView,
        action: PendingUpdate,
        provider_id: str,
        prices: Optional[Prices],
        method: ResolutionMethod,
    ) -> Tuple[PendingUpdate, Optional[HealthReport]]:
        """Append the call resolution the action earns, if any, to the action's update."""
        if prices is None or view.get_active_margin_call(provider_id) is None:
            return action, None
        staged = StagedView(view).with_update(action)
        price_map, stale, as_of = prices
        report = assess_provider(staged, self.tiers.snapshot(), provider_id, price_map, stale, as_of)
        resolution = compute_call_resolution(staged, report, method)
        origin = resolution.origin if action.is_empty() else action.origin
        return merge_updates(view, [action, resolution], origin), report

    def deposit(self, provider_id: str, tier: str, amount: int, asset: Optional[str] = None) -> ExecuteResult:
        """
        Add capital to a tier. A provider under an active margin call whose
        ratio this restores has the call resolved in the same update.
        """
        asset = asset or self.asset
        tiers = self.tiers.snapshot()
        prices = None
        if self.store.get_active_margin_call(provider_id) is not None:
            prices = self._prices_for_resolution(provider_id)

        def build(view: PoolView):
            action = compute_deposit(view, tiers, provider_id, tier, amount, asset)
            return self._with_resolution(view, action, provider_id, prices, ResolutionMethod.ADD_COLLATERAL)

        result, _, _ = self._apply_with_retry(self._provider_scope(provider_id, [tier]), build)
        logger.info("deposit", extra={"context": {"provider_id": provider_id, "tier": tier, "amount": amount}})
        return result

    def request_withdrawal(
        self,
        provider_id: str,
        amount: int,
        tier: Optional[str] = None,
        asset: Optional[str] = None,
    ) -> WithdrawalResult:
        asset = asset or self.asset
        tier = resolve_position_tier(self.store, provider_id, tier)
        tiers = self.tiers.snapshot()
        prices, _, _ = self._quote_prices(self._provider_assets(provider_id) | {asset})

        def build(view: PoolView):
            result, update = check_withdrawal(view, tiers, provider_id, amount, prices, tier, asset)
            return update, result

        _, _, result = self._apply_with_retry(self._provider_scope(provider_id, [tier]), build)
        if not result.ok:
            logger.info(
                "withdrawal refused",
                extra={"context": {"provider_id": provider_id, "amount": amount, "reason": result.reason}},
            )
        return result

    def claim_yield(self, provider_id: str, tier: Optional[str] = None, asset: Optional[str] = None) -> int:
        asset = asset or self.asset
        tier = resolve_position_tier(self.store, provider_id, tier)
        _, _, claimed = self._apply_with_retry(
            self._provider_scope(provider_id, [tier]),
            lambda view: compute_yield_claim(view, provider_id, tier, asset),
        )
        return claimed

    def resolve_margin_call(
        self,
        provider_id: str,
        method: ResolutionMethod,
        amount: Optional[int] = None,
        tier: Optional[str] = None,
        target_tier: Optional[str] = None,
        fraction: Optional[Decimal] = None,
        asset: Optional[str] = None,
    ) -> MarginCall:
        """
        Act on an active margin call.

        The action is applied whether or not it is enough; the call is
        resolved in the same update iff the ratio afterwards is at least the
        minimum.

        Args:
            method: ADD_COLLATERAL (amount, tier), MIGRATE_TIER (target_tier,
                tier), SELF_LIQUIDATE (fraction) or PRICE_RECOVERY
        Returns:
            The call as it stands afterwards (Resolved or still Active)

        Raises:
            ValidationError: no active call, or arguments missing for the method
            CollaboratorError: the insurance fund refused a self-liquidation
        """
        call = self.store.get_active_margin_call(provider_id)
        if call is None:
            raise ValidationError(f"Provider {provider_id} has no active margin call")
        asset = asset or self.asset
        tiers = self.tiers.snapshot()
        prices = self._quote_prices(self._provider_assets(provider_id))
        extra_tiers: List[str] = []
        before_apply = None

        if method is ResolutionMethod.ADD_COLLATERAL:
            if amount is None:
                raise ValidationError("ADD_COLLATERAL needs an amount")
            tier = resolve_position_tier(self.store, provider_id, tier)
            extra_tiers.append(tier)

            def act(view: PoolView) -> PendingUpdate:
                return compute_deposit(view, tiers, provider_id, tier, amount, asset)

        elif method is ResolutionMethod.MIGRATE_TIER:
            if target_tier is None:
                raise ValidationError("MIGRATE_TIER needs a target tier")
            tier = resolve_position_tier(self.store, provider_id, tier)
            extra_tiers.extend([tier, target_tier])

            def act(view: PoolView) -> PendingUpdate:
                return compute_tier_migration(view, tiers, provider_id, tier, target_tier)

        elif method is ResolutionMethod.SELF_LIQUIDATE:
            if fraction is None:
                raise ValidationError("SELF_LIQUIDATE needs a fraction")

            def act(view: PoolView) -> PendingUpdate:
                active = view.get_active_margin_call(provider_id)
                return compute_liquidation(view, provider_id, fraction, prices[0], call=active, voluntary=True)

            before_apply = self._hand_over_to_fund

        elif method is ResolutionMethod.PRICE_RECOVERY:
            def act(view: PoolView) -> PendingUpdate:
                return empty_update(view)

        else:
            raise ValidationError(f"Unknown resolution method {method!r}")

        def build(view: PoolView):
            return self._with_resolution(view, act(view), provider_id, prices, method)

        _, update, _ = self._apply_with_retry(
            self._provider_scope(provider_id, extra_tiers), build, before_apply,
        )
        self._mark_transferred(update)
        resolved = self.store.get_margin_call(call.call_id)
        logger.info(
            "margin call resolution attempted",
            extra={"context": {
                "provider_id": provider_id, "method": method.value,
                "status": resolved.status.value, "ratio": resolved.current_ratio,
            }},
        )
        return resolved

    # ========================================================================
    # INSURANCE FUND HANDOFF
    # ========================================================================

    def _hand_over_to_fund(self, update: PendingUpdate) -> None:
        """Called inside the locks, right before apply: the fund must accept first."""
        for event in update.liquidations:
            if event.obligations_transferred:
                self.insurance_fund.receive_transferred_obligations(
                    event.provider_id, list(event.obligations_transferred),
                )

    def _mark_transferred(self, update: PendingUpdate) -> None:
        for event in update.liquidations:
            for obligation_id in event.obligations_transferred:
                try:
                    self.policy_registry.mark_transferred(obligation_id, INSURANCE_FUND)
                except CollaboratorError:
                    logger.exception(
                        "policy registry rejected transfer",
                        extra={"context": {"obligation_id": obligation_id}},
                    )

    # ========================================================================
    # HEALTH, SWEEP AND TICK
    # ========================================================================

    def get_health(self, provider_id: str) -> HealthReport:
        prices, stale, as_of = self._quote_prices(self._provider_assets(provider_id))
        return assess_provider(self.store, self.tiers.snapshot(), provider_id, prices, stale, as_of)

    def _sweep_prices(self) -> Tuple[Dict[str, Decimal], bool, Optional[datetime], Set[str]]:
        prices: Dict[str, Decimal] = {}
        stale = False
        oldest: Optional[datetime] = None
        missing: Set[str] = set()
        for asset in sorted(self.store.list_assets() | {self.asset}):
            try:
                quote = self.prices.get_price(asset, self.store.current_time)
            except PriceUnavailable:
                missing.add(asset)
                continue
            prices[asset] = quote.price
            stale = stale or quote.stale
            oldest = quote.as_of if oldest is None else min(oldest, quote.as_of)
        return prices, stale, oldest, missing

    def sweep(self) -> SweepReport:
        """
        Recompute every provider's health and advance its margin call.

        Reports are computed in parallel; transitions are applied one provider
        at a time under that provider's locks. A failure for one provider is
        recorded and does not stop the others.
        """
        now = self.store.current_time
        tiers = self.tiers.snapshot()
        prices, stale, as_of, missing = self._sweep_prices()
        providers = sorted(self.store.list_providers() | {c.provider_id for c in self.store.active_margin_calls()})

        failed: Dict[str, str] = {}
        candidates = []
        for provider_id in providers:
            lacking = self._provider_assets(provider_id) & missing
            if lacking:
                failed[provider_id] = f"price unavailable for {sorted(lacking)}"
            else:
                candidates.append(provider_id)

        def assess(provider_id: str) -> HealthReport:
            return assess_provider(self.store, tiers, provider_id, prices, stale, as_of)

        reports: Dict[str, HealthReport] = {}
        with ThreadPoolExecutor(max_workers=self.config.sweep_workers) as executor:
            futures = {provider_id: executor.submit(assess, provider_id) for provider_id in candidates}
            for provider_id, future in futures.items():
                try:
                    reports[provider_id] = future.result()
                except (PoolError, ValueError) as exc:
                    failed[provider_id] = str(exc)

        outcome: Dict[str, List[str]] = {
            EVENT_MARGIN_CALL_ISSUED: [], EVENT_MARGIN_CALL_ESCALATED: [],
            EVENT_MARGIN_CALL_UPDATED: [], EVENT_MARGIN_CALL_RESOLVED: [],
            EVENT_PROVIDER_LIQUIDATED: [],
        }
        deferred: List[str] = []
        for provider_id in sorted(reports):
            report = reports[provider_id]
            if report.is_healthy and self.store.get_active_margin_call(provider_id) is None:
                continue
            try:
                kinds = self._advance_provider(provider_id, tiers, prices, stale, as_of)
            except CollaboratorError as exc:
                logger.warning(
                    "liquidation deferred: insurance fund failed",
                    extra={"context": {"provider_id": provider_id, "error": str(exc)}},
                )
                deferred.append(provider_id)
                continue
            except PoolError as exc:
                logger.error("sweep failed for provider", extra={"context": {"provider_id": provider_id, "error": str(exc)}})
                failed[provider_id] = str(exc)
                continue
            if kinds is None:
                deferred.append(provider_id)
                continue
            for kind in kinds:
                if kind in outcome and provider_id not in outcome[kind]:
                    outcome[kind].append(provider_id)

        sweep = SweepReport(
            timestamp=now,
            stale=stale,
            reports=reports,
            issued=tuple(outcome[EVENT_MARGIN_CALL_ISSUED]),
            escalated=tuple(outcome[EVENT_MARGIN_CALL_ESCALATED]),
            updated=tuple(outcome[EVENT_MARGIN_CALL_UPDATED]),
            resolved=tuple(outcome[EVENT_MARGIN_CALL_RESOLVED]),
            liquidated=tuple(outcome[EVENT_PROVIDER_LIQUIDATED]),
            deferred=tuple(deferred),
            failed=failed,
        )
        logger.info(
            "sweep complete",
            extra={"context": {
                "providers": len(providers), "stale": stale, "issued": len(sweep.issued),
                "liquidated": len(sweep.liquidated), "deferred": len(sweep.deferred),
                "failed": len(sweep.failed),
            }},
        )
        return sweep

    def _advance_provider(
        self,
        provider_id: str,
        tiers,
        prices: Dict[str, Decimal],
        stale: bool,
        as_of: Optional[datetime],
    ) -> Optional[List[str]]:
        """
        Apply one provider's margin call transition or liquidation.

        Returns the notice kinds applied, or None when a due liquidation was
        deferred because prices are stale.
        """
        now = self.store.current_time
        deferred = []

        def build(view: PoolView):
            deferred.clear()
            report = assess_provider(view, tiers, provider_id, prices, stale, as_of)
            call = view.get_active_margin_call(provider_id)
            if is_liquidation_due(call, report, now):
                fraction = self.tiers.liquidation_fraction
                return compute_liquidation(view, provider_id, fraction, prices, call=call), report
            if stale and call is not None and now > call.deadline and report.below_minimum:
                deferred.append(provider_id)
            update = compute_margin_call_transition(
                view, report, self.config.warning_grace_period, self.config.emergency_grace_period,
            )
            return update, report

        _, update, _ = self._apply_with_retry(
            self._provider_scope(provider_id), build, self._hand_over_to_fund,
        )
        if update.liquidations:
            self._mark_transferred(update)
            logger.warning(
                "provider liquidated",
                extra={"context": {
                    "provider_id": provider_id,
                    "liquidated": update.liquidations[0].liquidated_amount,
                    "obligations": update.liquidations[0].obligations_transferred,
                }},
            )
        if deferred:
            return None
        return [notice.kind for notice in update.notices]

    def tick(self, now: datetime) -> SweepReport:
        """Advance pool time, expire due obligations, then sweep."""
        self.store.advance_time(now)
        _, failed = self.scheduler.run_due(now)
        for event, exc in failed:
            logger.warning(
                "scheduled event failed, will retry",
                extra={"context": {"event_id": event.event_id, "error": str(exc)}},
            )
        return self.sweep()

    def verify(self) -> Dict[str, Any]:
        return self.store.verify_invariants()

    def close(self) -> None:
        self.prices.close()
