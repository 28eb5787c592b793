"""
scheduled_events.py - Minimal Event Scheduler

Time-based obligation lifecycle (expiry) for the engine's tick loop:
- Simple heap-based scheduling
- Events are just data, handlers are just callables
- The store's update log IS the audit trail (no separate event status tracking)

Margin-call deadlines are not scheduled here: tick() compares every active
call's deadline with the pool time directly.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
import heapq


ACTION_EXPIRE = "expire"


# ============================================================================
# EVENT DATA STRUCTURE
# ============================================================================

@dataclass(frozen=True, slots=True)
class Event:
    """
    Immutable scheduled lifecycle event.

    Sorting: by trigger_time, then priority (lower=first), then subject.

    Attributes:
        trigger_time: When this event should execute
        priority: Execution order within same timestamp (0=first)
        subject: Obligation id (or other record) the event affects
        action: Event type string ("expire", ...)
        params: Event-specific parameters as frozen tuple of (key, value) pairs
    """
    trigger_time: datetime
    priority: int = 0
    subject: str = ""
    action: str = ""
    params: tuple = ()

    def __lt__(self, other: Event) -> bool:
        if self.trigger_time != other.trigger_time:
            return self.trigger_time < other.trigger_time
        if self.priority != other.priority:
            return self.priority < other.priority
        return self.subject < other.subject

    @property
    def params_dict(self) -> Dict[str, Any]:
        return dict(self.params)

    @property
    def event_id(self) -> str:
        """Deterministic ID for deduplication."""
        params_str = "|".join(f"{k}={v}" for k, v in sorted(self.params))
        return f"{self.action}:{self.subject}:{self.trigger_time.isoformat()}:{params_str}"


# ============================================================================
# EVENT SCHEDULER
# ============================================================================

EventHandler = Callable[[Event], Any]


class EventScheduler:
    """
    Minimal event scheduler using a priority queue.

    - Events are scheduled in advance
    - get_due() returns events ready to execute
    - An event already pending, or executed within the retention window,
      is not scheduled again
    - An event is marked executed only when its handler returns; an event
      whose handler raised can be scheduled again
    - run_due(as_of) forgets executed events triggered before
      as_of - retention
    """

    def __init__(self, retention: timedelta = timedelta(days=1)):
        self.retention = retention
        self._heap: List[Event] = []
        self._handlers: Dict[str, EventHandler] = {}
        self._pending: Set[str] = set()
        self._executed: Dict[str, datetime] = {}

    def register(self, action: str, handler: EventHandler) -> None:
        self._handlers[action] = handler

    def schedule(self, event: Event) -> str:
        event_id = event.event_id
        if event_id in self._pending or event_id in self._executed:
            return event_id
        self._pending.add(event_id)
        heapq.heappush(self._heap, event)
        return event_id

    def get_due(self, as_of: datetime) -> List[Event]:
        """
        Get and remove events due for execution.

        Returns events with trigger_time <= as_of, in execution order.
        Already-executed events are skipped.
        """
        due = []
        while self._heap and self._heap[0].trigger_time <= as_of:
            event = heapq.heappop(self._heap)
            self._pending.discard(event.event_id)
            if event.event_id not in self._executed:
                due.append(event)
        return due

    def execute(self, event: Event) -> Any:
        """
        Run one event's handler.

        Raises:
            KeyError: if no handler is registered for the action
            Exception: anything the handler raises propagates unchanged
        """
        handler = self._handlers[event.action]
        result = handler(event)
        self._executed[event.event_id] = event.trigger_time
        return result

    def run_due(self, as_of: datetime) -> Tuple[List[Tuple[Event, Any]], List[Tuple[Event, Exception]]]:
        """
        Execute every due event.

        A failing event is rescheduled unchanged so the next call retries it;
        the others still run.

        Returns:
            (completed (event, result) pairs, failed (event, exception) pairs)
        """
        done: List[Tuple[Event, Any]] = []
        failed: List[Tuple[Event, Exception]] = []
        for event in self.get_due(as_of):
            try:
                done.append((event, self.execute(event)))
            except Exception as exc:
                failed.append((event, exc))
        for event, _ in failed:
            self.schedule(event)
        self._forget_before(as_of - self.retention)
        return done, failed

    def _forget_before(self, cutoff: datetime) -> None:
        for event_id in [e for e, t in self._executed.items() if t < cutoff]:
            del self._executed[event_id]

    def pending_count(self) -> int:
        return len(self._heap)

    def executed_count(self) -> int:
        return len(self._executed)

    def peek_next(self) -> Optional[Event]:
        return self._heap[0] if self._heap else None


def expiry_event(obligation_id: str, expires_at: datetime) -> Event:
    return Event(
        trigger_time=expires_at,
        priority=10,
        subject=obligation_id,
        action=ACTION_EXPIRE,
    )
