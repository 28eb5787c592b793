"""
test_collaborators.py - Unit tests for the in-memory collaborator adapters
"""

import json
import logging
import pytest
from decimal import Decimal

from protection_pool import (
    InMemoryPolicyRegistry, InMemoryInsuranceFund, RecordingNotifier, LoggingNotifier,
    PolicyRegistry, InsuranceFund, Notifier, PremiumCalculator, FixedRatePremiumCalculator,
    ObligationStatus, PolicyType, PoolEvent, CollaboratorError,
)
from protection_pool.log import JsonFormatter

from tests.conftest import T0


class TestProtocols:

    def test_adapters_satisfy_protocols(self):
        assert isinstance(InMemoryPolicyRegistry(), PolicyRegistry)
        assert isinstance(InMemoryInsuranceFund(), InsuranceFund)
        assert isinstance(RecordingNotifier(), Notifier)
        assert isinstance(LoggingNotifier(), Notifier)
        assert isinstance(FixedRatePremiumCalculator(), PremiumCalculator)


class TestPolicyRegistry:

    @pytest.fixture
    def registry(self):
        return InMemoryPolicyRegistry()

    def _create(self, registry):
        return registry.create_obligation("bob", PolicyType.PUT, "BTC", Decimal("43000"), 300, 3, T0)

    def test_sequential_ids(self, registry):
        assert [self._create(registry), self._create(registry)] == ["pol-000001", "pol-000002"]

    def test_transfer_then_settle_keeps_transferred(self, registry):
        oid = self._create(registry)
        registry.mark_transferred(oid, "insurance_fund")
        registry.mark_expired(oid)
        assert registry.status(oid) is ObligationStatus.TRANSFERRED
        assert registry.policies[oid]['counterparties'] == ["insurance_fund"]

    def test_settlement_is_final(self, registry):
        oid = self._create(registry)
        registry.mark_exercised(oid)
        registry.mark_canceled(oid)
        assert registry.status(oid) is ObligationStatus.EXERCISED

    def test_unknown_policy(self, registry):
        with pytest.raises(CollaboratorError):
            registry.mark_expired("missing")


class TestInsuranceFund:

    def test_records_handoffs(self):
        fund = InMemoryInsuranceFund()
        fund.receive_transferred_obligations("alice", ["pol-1", "pol-2"])
        assert fund.received == [("alice", ("pol-1", "pol-2"))]
        assert fund.obligation_ids == ["pol-1", "pol-2"]

    def test_fail_next(self):
        fund = InMemoryInsuranceFund()
        fund.fail_next = 1
        with pytest.raises(CollaboratorError):
            fund.receive_transferred_obligations("alice", ["pol-1"])
        fund.receive_transferred_obligations("alice", ["pol-1"])
        assert fund.obligation_ids == ["pol-1"]


class TestNotifiers:

    def test_recording_filters_by_provider(self):
        notifier = RecordingNotifier()
        notifier.notify(PoolEvent("margin_call_issued", "alice", T0))
        notifier.notify(PoolEvent("margin_call_issued", "bob", T0))
        assert notifier.kinds("alice") == ["margin_call_issued"]
        assert len(notifier.kinds()) == 2

    def test_logging_notifier(self, caplog):
        with caplog.at_level(logging.INFO, logger="protection_pool.collaborators"):
            LoggingNotifier().notify(PoolEvent("provider_liquidated", "alice", T0, (("call_id", "mc-1"),)))
        (record,) = [r for r in caplog.records if r.msg == "provider_liquidated"]
        assert record.context == {"provider_id": "alice", "call_id": "mc-1"}

    def test_json_formatter(self):
        record = logging.LogRecord("protection_pool", logging.INFO, __file__, 1, "stale price", (), None)
        record.context = {"asset": "BTC", "as_of": T0, "ids": ("a", "b")}
        payload = json.loads(JsonFormatter().format(record))
        assert payload["msg"] == "stale price"
        assert payload["asset"] == "BTC"
        assert payload["as_of"] == str(T0)
        assert payload["ids"] == ["a", "b"]
