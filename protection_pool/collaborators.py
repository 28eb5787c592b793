"""
collaborators.py - Ports to the systems around the engine

The engine talks to the policy registry, insurance fund, premium calculator
and notification delivery only through these Protocols. In-memory adapters
are provided for tests, simulations and single-process deployments.

Collaborator failures surface as CollaboratorError.
"""

from __future__ import annotations
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Protocol, Sequence, Tuple, runtime_checkable
import threading

from .core import (
    PoolEvent, PolicyType, RiskTier, ObligationStatus, CollaboratorError, INSURANCE_FUND,
)
from .log import get_logger


logger = get_logger(__name__)


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class PolicyRegistry(Protocol):
    """Owner of the policy records an obligation collateralizes."""

    def create_obligation(
        self,
        owner: str,
        policy_type: PolicyType,
        asset: str,
        protected_value: Decimal,
        protected_amount: int,
        premium: int,
        expires_at: datetime,
    ) -> str:
        ...

    def mark_transferred(self, obligation_id: str, new_counterparty: str) -> None:
        ...

    def mark_exercised(self, obligation_id: str) -> None:
        ...

    def mark_expired(self, obligation_id: str) -> None:
        ...

    def mark_canceled(self, obligation_id: str) -> None:
        ...


@runtime_checkable
class InsuranceFund(Protocol):
    """Backstop receiving obligations seized from liquidated providers."""

    def receive_transferred_obligations(self, provider_id: str, obligation_ids: Sequence[str]) -> None:
        """Accept the obligations; raise to refuse (nothing is then changed)."""
        ...


@runtime_checkable
class PremiumCalculator(Protocol):
    def quote(
        self,
        tier: RiskTier,
        protected_value: Decimal,
        protected_amount: int,
        duration: timedelta,
        policy_type: PolicyType,
        current_price: Decimal,
        asset: str,
        timestamp: datetime,
    ) -> int:
        """Premium in smallest units of `asset`."""
        ...


@runtime_checkable
class Notifier(Protocol):
    def notify(self, event: PoolEvent) -> None:
        ...


# ============================================================================
# IN-MEMORY ADAPTERS
# ============================================================================

class InMemoryPolicyRegistry:
    """
    Sequential-id policy registry.

    Example:
        registry = InMemoryPolicyRegistry()
        oid = registry.create_obligation("bob", PolicyType.PUT, "BTC", Decimal("43000"), 300, 12, expiry)
        registry.status(oid)  # ObligationStatus.ACTIVE
    """

    def __init__(self, prefix: str = "pol"):
        self.prefix = prefix
        self.policies: Dict[str, Dict] = {}
        self._next = 1
        self._lock = threading.Lock()

    def create_obligation(self, owner, policy_type, asset, protected_value, protected_amount, premium, expires_at) -> str:
        with self._lock:
            obligation_id = f"{self.prefix}-{self._next:06d}"
            self._next += 1
            self.policies[obligation_id] = {
                'owner': owner,
                'policy_type': policy_type,
                'asset': asset,
                'protected_value': protected_value,
                'protected_amount': protected_amount,
                'premium': premium,
                'expires_at': expires_at,
                'status': ObligationStatus.ACTIVE,
                'counterparties': [],
            }
        return obligation_id

    def _policy(self, obligation_id: str) -> Dict:
        if obligation_id not in self.policies:
            raise CollaboratorError(f"Unknown policy {obligation_id}")
        return self.policies[obligation_id]

    def status(self, obligation_id: str) -> ObligationStatus:
        return self._policy(obligation_id)['status']

    def mark_transferred(self, obligation_id: str, new_counterparty: str) -> None:
        with self._lock:
            policy = self._policy(obligation_id)
            policy['counterparties'].append(new_counterparty)
            if policy['status'] is ObligationStatus.ACTIVE:
                policy['status'] = ObligationStatus.TRANSFERRED

    def _settle(self, obligation_id: str, status: ObligationStatus) -> None:
        with self._lock:
            policy = self._policy(obligation_id)
            if policy['status'] is ObligationStatus.ACTIVE:
                policy['status'] = status

    def mark_exercised(self, obligation_id: str) -> None:
        self._settle(obligation_id, ObligationStatus.EXERCISED)

    def mark_expired(self, obligation_id: str) -> None:
        self._settle(obligation_id, ObligationStatus.EXPIRED)

    def mark_canceled(self, obligation_id: str) -> None:
        self._settle(obligation_id, ObligationStatus.CANCELED)


class InMemoryInsuranceFund:
    """
    Records every handoff. Set `fail_next` to make the next receipt raise,
    e.g. to exercise the retry-on-next-tick path.
    """

    def __init__(self, name: str = INSURANCE_FUND):
        self.name = name
        self.received: List[Tuple[str, Tuple[str, ...]]] = []
        self.fail_next = 0

    def receive_transferred_obligations(self, provider_id: str, obligation_ids: Sequence[str]) -> None:
        if self.fail_next > 0:
            self.fail_next -= 1
            raise CollaboratorError(f"Insurance fund refused obligations of {provider_id}")
        self.received.append((provider_id, tuple(obligation_ids)))

    @property
    def obligation_ids(self) -> List[str]:
        return [oid for _, ids in self.received for oid in ids]


class RecordingNotifier:
    """Keeps every event in memory."""

    def __init__(self):
        self.events: List[PoolEvent] = []

    def notify(self, event: PoolEvent) -> None:
        self.events.append(event)

    def kinds(self, provider_id: Optional[str] = None) -> List[str]:
        return [e.kind for e in self.events if provider_id is None or e.provider_id == provider_id]


class LoggingNotifier:
    """Writes every event to the log; the default notifier."""

    def notify(self, event: PoolEvent) -> None:
        logger.info(
            event.kind,
            extra={"context": {"provider_id": event.provider_id, **event.details_dict}},
        )
