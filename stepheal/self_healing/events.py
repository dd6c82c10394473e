"""
Healing telemetry.
Thread-safe store of healing attempts and orchestration runs, with analytics.
"""
import threading
import time
from collections import deque, Counter
from dataclasses import dataclass, asdict
from typing import List, Dict, Any, Optional, Callable

from stepheal.self_healing.types import HealingRequest, HealingResponse
from stepheal.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class HealingEvent:
    """One healing attempt."""
    id: str
    timestamp: float
    session_id: str
    step_key: str
    step_kind: str
    step_label: str
    page_url: str
    original_locator: str
    healed_locator: Optional[str]
    provider: str
    success: bool
    confidence: float
    action: str
    duration_ms: int
    cache_hit: bool
    cost: float = 0.0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class RunRecord:
    """One execute_all run."""
    id: str
    timestamp: float
    total: int
    passed: int
    failed: int
    healed: int
    duration_ms: int

    def to_dict(self) -> dict:
        return asdict(self)


class HealingEventStore:
    """
    Thread-safe store for healing events and run records.
    Keeps a bounded history plus running totals.
    """

    def __init__(self, max_events: int = 500, max_runs: int = 100, clock: Callable[[], float] = time.time):
        self._lock = threading.Lock()
        self._clock = clock
        self._events: deque = deque(maxlen=max_events)
        self._runs: deque = deque(maxlen=max_runs)
        self._stats = {
            'total_attempts': 0,
            'successful': 0,
            'failed': 0,
            'cache_hits': 0,
            'total_cost': 0.0,
        }
        self._enabled = True
        self._event_counter = 0
        self._run_counter = 0

    @property
    def enabled(self) -> bool:
        return self._enabled

    @enabled.setter
    def enabled(self, value: bool):
        self._enabled = value

    def record_healing(
        self,
        request: HealingRequest,
        response: HealingResponse,
        cost: float = 0.0
    ) -> Optional[HealingEvent]:
        """Record one healing attempt. Returns None while recording is disabled."""
        if not self._enabled:
            return None

        action = request.action
        with self._lock:
            self._event_counter += 1
            now = self._clock()
            event = HealingEvent(
                id=f"heal_{int(now)}_{self._event_counter}",
                timestamp=now,
                session_id=request.session_id,
                step_key=action.step_key,
                step_kind=action.kind,
                step_label=action.label,
                page_url=request.page.url,
                original_locator=action.primary_locator,
                healed_locator=response.suggested_locator,
                provider=response.provider.value,
                success=response.success,
                confidence=response.confidence,
                action=response.action.value,
                duration_ms=int(response.duration * 1000),
                cache_hit=response.cache_hit,
                cost=cost,
                error=response.error,
            )
            self._events.append(event)

            self._stats['total_attempts'] += 1
            self._stats['successful' if event.success else 'failed'] += 1
            if event.cache_hit:
                self._stats['cache_hits'] += 1
            self._stats['total_cost'] += cost

        logger.debug(
            f"Healing event {event.id}: {event.step_key} provider={event.provider} "
            f"success={event.success} confidence={event.confidence:.2f} action={event.action}"
        )
        return event

    def record_run(self, total: int, passed: int, failed: int, healed: int = 0, duration: float = 0.0) -> RunRecord:
        """Record one orchestration run (pass/fail counts)."""
        with self._lock:
            self._run_counter += 1
            now = self._clock()
            run = RunRecord(
                id=f"run_{int(now)}_{self._run_counter}",
                timestamp=now,
                total=total,
                passed=passed,
                failed=failed,
                healed=healed,
                duration_ms=int(duration * 1000),
            )
            self._runs.append(run)
            return run

    def get_events(self, limit: int = 50) -> List[dict]:
        """Get recent events, newest first."""
        with self._lock:
            events = list(self._events)[-limit:]
            return [e.to_dict() for e in reversed(events)]

    def get_runs(self, limit: int = 20) -> List[dict]:
        with self._lock:
            runs = list(self._runs)[-limit:]
            return [r.to_dict() for r in reversed(runs)]

    def get_stats(self) -> dict:
        """Running totals since the store was created."""
        with self._lock:
            total = self._stats['total_attempts']
            return {
                'enabled': self._enabled,
                'total_attempts': total,
                'successful': self._stats['successful'],
                'failed': self._stats['failed'],
                'success_rate': (self._stats['successful'] / total * 100) if total > 0 else 0,
                'cache_hits': self._stats['cache_hits'],
                'total_cost': self._stats['total_cost'],
            }

    def get_analytics(self, since: Optional[float] = None) -> Dict[str, Any]:
        """
        Analytics over the retained history.

        Args:
            since: Only count events at or after this timestamp

        Returns:
            Totals, rates, averages, API cost, and per-provider / per-action
            breakdowns
        """
        with self._lock:
            events = [e for e in self._events if since is None or e.timestamp >= since]

        total = len(events)
        successful = [e for e in events if e.success]
        by_provider: Dict[str, Dict[str, int]] = {}
        for event in events:
            bucket = by_provider.setdefault(event.provider, {'attempts': 0, 'success': 0, 'failed': 0})
            bucket['attempts'] += 1
            bucket['success' if event.success else 'failed'] += 1

        return {
            'total_attempts': total,
            'successful': len(successful),
            'failed': total - len(successful),
            'success_rate': len(successful) / total if total else 0.0,
            'cache_hit_rate': sum(1 for e in events if e.cache_hit) / total if total else 0.0,
            'average_confidence': (
                sum(e.confidence for e in successful) / len(successful) if successful else 0.0
            ),
            'average_duration_ms': sum(e.duration_ms for e in events) / total if total else 0.0,
            'total_cost': sum(e.cost for e in events),
            'by_provider': by_provider,
            'by_action': dict(Counter(e.action for e in events)),
            'recent': [e.to_dict() for e in reversed(events[-10:])],
        }

    def clear_older_than(self, max_age_seconds: float) -> int:
        """Drop events older than ``max_age_seconds``. Returns how many were dropped."""
        with self._lock:
            cutoff = self._clock() - max_age_seconds
            kept = [e for e in self._events if e.timestamp >= cutoff]
            removed = len(self._events) - len(kept)
            self._events = deque(kept, maxlen=self._events.maxlen)
            return removed

    def clear_history(self):
        """Clear event and run history (keep totals)."""
        with self._lock:
            self._events.clear()
            self._runs.clear()
