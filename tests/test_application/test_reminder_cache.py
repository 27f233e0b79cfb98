"""Tests for the process-local reminder de-duplication cache"""
from earlyrise.application.reminder_cache import ReminderCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestReminderCache:
    def test_mark_and_seen(self):
        cache = ReminderCache(ttl_seconds=60, clock=FakeClock())
        assert not cache.seen(1, "2026-03-10")
        cache.mark(1, "2026-03-10")
        assert cache.seen(1, "2026-03-10")
        assert not cache.seen(1, "2026-03-11")
        assert not cache.seen(2, "2026-03-10")

    def test_kinds_are_independent(self):
        cache = ReminderCache(ttl_seconds=60, clock=FakeClock())
        cache.mark(1, "2026-03-10", kind="tap_rejected")
        assert cache.seen(1, "2026-03-10", kind="tap_rejected")
        assert not cache.seen(1, "2026-03-10")

    def test_entries_expire(self):
        clock = FakeClock()
        cache = ReminderCache(ttl_seconds=60, clock=clock)
        cache.mark(1, "2026-03-10")
        clock.now += 59
        assert cache.seen(1, "2026-03-10")
        clock.now += 1
        assert not cache.seen(1, "2026-03-10")

    def test_max_entries_purges_expired_first(self):
        clock = FakeClock()
        cache = ReminderCache(ttl_seconds=10, max_entries=2, clock=clock)
        cache.mark(1, "d")
        clock.now += 20
        cache.mark(2, "d")
        cache.mark(3, "d")
        assert len(cache) == 2
        assert cache.seen(2, "d")
        assert cache.seen(3, "d")

    def test_max_entries_drops_closest_to_expiry(self):
        clock = FakeClock()
        cache = ReminderCache(ttl_seconds=100, max_entries=2, clock=clock)
        cache.mark(1, "d")
        clock.now += 1
        cache.mark(2, "d")
        clock.now += 1
        cache.mark(3, "d")
        assert len(cache) == 2
        assert not cache.seen(1, "d")
        assert cache.seen(3, "d")
