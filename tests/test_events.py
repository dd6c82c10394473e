"""
Unit tests for HealingEventStore.
"""

import pytest

from stepheal.models import ActionDescriptor, LocatorHints, PageContext
from stepheal.self_healing.events import HealingEventStore
from stepheal.self_healing.types import (
    HealingAction,
    HealingRequest,
    HealingResponse,
    ProviderType,
)


def request(label='Save'):
    action = ActionDescriptor(kind='click', label=label, hints=LocatorHints(selector='#save'))
    return HealingRequest(action=action, snapshot=None, page=PageContext(url='https://x.io/a'), session_id='s1')


def response(provider=ProviderType.LOCAL_HEURISTIC, success=True, confidence=0.7, duration=0.05):
    return HealingResponse(
        success=success,
        provider=provider if success else ProviderType.FALLBACK,
        confidence=confidence if success else 0.0,
        action=HealingAction.APPLY_FLAG if success else HealingAction.NO_ACTION,
        suggested_locator='#save-v2' if success else None,
        duration=duration,
    )


class TestHealingEventStore:
    """Test suite for HealingEventStore."""

    @pytest.fixture
    def store(self, clock):
        return HealingEventStore(max_events=5, clock=clock)

    def test_record_and_list(self, store):
        store.record_healing(request('A'), response())
        store.record_healing(request('B'), response(success=False))

        events = store.get_events()
        assert [e['step_label'] for e in events] == ['B', 'A']
        assert events[1]['healed_locator'] == '#save-v2'
        assert events[1]['duration_ms'] == 50

    def test_bounded_history(self, store):
        for i in range(8):
            store.record_healing(request(f'S{i}'), response())
        assert len(store.get_events(limit=100)) == 5
        # totals keep counting past the bound
        assert store.get_stats()['total_attempts'] == 8

    def test_stats(self, store):
        store.record_healing(request(), response(provider=ProviderType.CACHE))
        store.record_healing(request(), response(provider=ProviderType.REMOTE_VISION), cost=0.005)
        store.record_healing(request(), response(success=False))

        stats = store.get_stats()
        assert stats['successful'] == 2
        assert stats['failed'] == 1
        assert stats['cache_hits'] == 1
        assert stats['total_cost'] == pytest.approx(0.005)
        assert stats['success_rate'] == pytest.approx(200 / 3)

    def test_analytics(self, store, clock):
        store.record_healing(request(), response(provider=ProviderType.CACHE, confidence=0.9))
        clock.advance(100)
        store.record_healing(request(), response(confidence=0.5))
        store.record_healing(request(), response(success=False))

        analytics = store.get_analytics()
        assert analytics['total_attempts'] == 3
        assert analytics['success_rate'] == pytest.approx(2 / 3)
        assert analytics['cache_hit_rate'] == pytest.approx(1 / 3)
        assert analytics['average_confidence'] == pytest.approx(0.7)
        assert analytics['by_provider']['local-heuristic'] == {'attempts': 1, 'success': 1, 'failed': 0}
        assert analytics['by_action']['no-action'] == 1

        recent = store.get_analytics(since=clock() - 10)
        assert recent['total_attempts'] == 2

    def test_empty_analytics(self, store):
        analytics = store.get_analytics()
        assert analytics['total_attempts'] == 0
        assert analytics['success_rate'] == 0.0

    def test_clear_older_than(self, store, clock):
        store.record_healing(request('old'), response())
        clock.advance(3600)
        store.record_healing(request('new'), response())

        assert store.clear_older_than(60) == 1
        assert [e['step_label'] for e in store.get_events()] == ['new']

    def test_disabled(self, store):
        store.enabled = False
        assert store.record_healing(request(), response()) is None
        assert store.get_stats()['total_attempts'] == 0

    def test_runs(self, store):
        store.record_run(total=5, passed=4, failed=1, healed=1, duration=2.5)
        runs = store.get_runs()
        assert runs[0]['passed'] == 4
        assert runs[0]['duration_ms'] == 2500

        store.clear_history()
        assert store.get_runs() == []
        assert store.get_events() == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
