"""
margin_calls.py - Margin Call State Machine

    NoCall --(Warning | UnderCollateralized)--> Active
    Active --(refresh: deficit/ratio updated, deadline never lengthens)--> Active
    Active --(ratio >= min_ratio after a resolution action)--> Resolved
    Active --(now > deadline and ratio < min_ratio)--> Liquidated

A provider has at most one active call. New deficits update that call in
place; severity only ever escalates within a call, and escalation to
UnderCollateralized pulls the deadline in to now + emergency grace period.

Transitions are computed from a HealthReport. A report built from a stale
price may refresh an existing call's figures but never opens, escalates or
resolves one.
"""

from __future__ import annotations
from dataclasses import replace
from datetime import datetime, timedelta
from typing import List, Optional

from ..core import (
    PoolView, PendingUpdate, StateChange, UpdateOrigin, OriginType, PoolEvent,
    MarginCall, MarginCallStatus, HealthStatus, ResolutionMethod,
    TABLE_MARGIN_CALLS,
    EVENT_MARGIN_CALL_ISSUED, EVENT_MARGIN_CALL_ESCALATED,
    EVENT_MARGIN_CALL_UPDATED, EVENT_MARGIN_CALL_RESOLVED,
    build_update, derive_id, empty_update,
)
from .health import HealthReport


def calculate_deadline(
    now: datetime,
    severity: HealthStatus,
    warning_grace: timedelta,
    emergency_grace: timedelta,
) -> datetime:
    if severity is HealthStatus.UNDER_COLLATERALIZED:
        return now + emergency_grace
    return now + warning_grace


def _notice(kind: str, call: MarginCall, now: datetime) -> PoolEvent:
    return PoolEvent(
        kind=kind,
        provider_id=call.provider_id,
        timestamp=now,
        details=(
            ("call_id", call.call_id),
            ("severity", call.severity.value),
            ("deadline", call.deadline),
            ("deficit", call.deficit),
            ("ratio", call.current_ratio),
        ),
    )


def open_call(
    report: HealthReport,
    now: datetime,
    warning_grace: timedelta,
    emergency_grace: timedelta,
    sequence: int = 0,
) -> MarginCall:
    """Build a new Active call for an unhealthy report. sequence counts the provider's earlier calls."""
    return MarginCall(
        call_id=derive_id("mc", report.provider_id, now, sequence),
        provider_id=report.provider_id,
        issued_at=now,
        deadline=calculate_deadline(now, report.status, warning_grace, emergency_grace),
        deficit=report.deficit,
        current_ratio=report.ratio,
        min_ratio=report.min_ratio,
        severity=report.status,
    )


def refresh_call(
    call: MarginCall,
    report: HealthReport,
    now: datetime,
    emergency_grace: timedelta,
    allow_escalation: bool = True,
) -> MarginCall:
    """
    Update an active call's figures from a newer report.

    The deadline can only move earlier: escalation to UnderCollateralized
    sets it to min(deadline, now + emergency_grace).
    """
    severity = call.severity
    deadline = call.deadline
    if allow_escalation and report.status.severity > call.severity.severity:
        severity = report.status
        if severity is HealthStatus.UNDER_COLLATERALIZED:
            deadline = min(deadline, now + emergency_grace)
    return replace(
        call,
        deficit=report.deficit,
        current_ratio=report.ratio,
        min_ratio=report.min_ratio,
        severity=severity,
        deadline=deadline,
    )


def resolve_call(call: MarginCall, now: datetime, method: ResolutionMethod) -> MarginCall:
    return replace(call, status=MarginCallStatus.RESOLVED, resolved_at=now, resolution=method)


def is_liquidation_due(call: Optional[MarginCall], report: HealthReport, now: datetime) -> bool:
    """True once an active call's deadline has passed with the ratio still short."""
    return (
        call is not None
        and call.is_active
        and not report.stale
        and now > call.deadline
        and report.below_minimum
    )


def compute_margin_call_transition(
    view: PoolView,
    report: HealthReport,
    warning_grace: timedelta,
    emergency_grace: timedelta,
) -> PendingUpdate:
    """
    Advance a provider's margin call state from a fresh HealthReport.

    Liquidation is not decided here; see is_liquidation_due() and
    compute_liquidation().

    Returns:
        PendingUpdate creating, refreshing or resolving the call, or an empty
        update when nothing changes.
    """
    now = view.current_time
    call = view.get_active_margin_call(report.provider_id)
    origin = UpdateOrigin(OriginType.MONITOR, "margin_call", report.provider_id)

    if call is None:
        if report.stale or report.is_healthy:
            return empty_update(view)
        sequence = sum(1 for c in view.list_margin_calls() if c.provider_id == report.provider_id)
        new = open_call(report, now, warning_grace, emergency_grace, sequence)
        return build_update(
            view,
            [StateChange(TABLE_MARGIN_CALLS, new.call_id, None, new)],
            origin,
            notices=[_notice(EVENT_MARGIN_CALL_ISSUED, new, now)],
        )

    if report.is_healthy and not report.stale:
        new = resolve_call(call, now, ResolutionMethod.PRICE_RECOVERY)
        return build_update(
            view,
            [StateChange(TABLE_MARGIN_CALLS, call.call_id, call, new)],
            origin,
            notices=[_notice(EVENT_MARGIN_CALL_RESOLVED, new, now)],
        )

    new = refresh_call(call, report, now, emergency_grace, allow_escalation=not report.stale)
    if new == call:
        return empty_update(view)
    kind = EVENT_MARGIN_CALL_ESCALATED if new.severity is not call.severity else EVENT_MARGIN_CALL_UPDATED
    return build_update(
        view,
        [StateChange(TABLE_MARGIN_CALLS, call.call_id, call, new)],
        origin,
        notices=[_notice(kind, new, now)],
    )


def compute_call_resolution(
    view: PoolView,
    report: HealthReport,
    method: ResolutionMethod,
) -> PendingUpdate:
    """
    Resolve the provider's active call if the report shows ratio >= min_ratio.

    The report must describe the state after the resolution action (e.g.
    assessed on a StagedView carrying the deposit).
    """
    call = view.get_active_margin_call(report.provider_id)
    if call is None or report.stale or report.below_minimum:
        return empty_update(view)
    now = view.current_time
    new = resolve_call(call, now, method)
    changes: List[StateChange] = [StateChange(TABLE_MARGIN_CALLS, call.call_id, call, new)]
    return build_update(
        view,
        changes,
        UpdateOrigin(OriginType.PROVIDER, f"resolve:{method.value}", report.provider_id),
        notices=[_notice(EVENT_MARGIN_CALL_RESOLVED, new, now)],
    )
