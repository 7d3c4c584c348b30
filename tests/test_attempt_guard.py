"""Tests for the failed-login counter and lockout."""

from datetime import timedelta

import pytest

from rebelauth.service.attempts import AttemptGuard, normalize_identifier


class FakeFailureCache:
    """In-process stand-in for the Redis failure log."""

    def __init__(self):
        self.failures = {}

    async def record_login_failure(self, identifier, at, retention_seconds):
        entries = self.failures.setdefault(identifier, [])
        entries.append(at)
        cutoff = at - timedelta(seconds=retention_seconds)
        self.failures[identifier] = [ts for ts in entries if ts > cutoff]
        return len(self.failures[identifier])

    async def login_failure_window(self, identifier, since):
        entries = [ts for ts in self.failures.get(identifier, []) if ts > since]
        if not entries:
            return 0, None
        return len(entries), max(entries)

    async def clear_login_failures(self, identifier):
        self.failures.pop(identifier, None)


@pytest.fixture
def guard(store, clock):
    return AttemptGuard(store, clock=clock)


@pytest.fixture
def cached_guard(store, clock):
    return AttemptGuard(store, cache=FakeFailureCache(), clock=clock)


class TestIdentifierNormalization:
    def test_strips_and_lowercases(self):
        assert normalize_identifier("  User@Example.COM ") == "user@example.com"


class TestStoreBackedGuard:
    async def test_fresh_identifier_has_full_budget(self, guard):
        status = await guard.check("a@example.com")
        assert not status.blocked
        assert status.remaining_attempts == 5

    async def test_five_failures_lock_for_thirty_minutes(self, guard, clock):
        for _ in range(5):
            await guard.record("a@example.com", "10.0.0.1", False)
            clock.advance(seconds=10)

        status = await guard.check("a@example.com")
        assert status.blocked
        assert status.remaining_attempts == 0
        assert status.lock_remaining_minutes == 30

    async def test_lock_remaining_counts_down(self, guard, clock):
        for _ in range(5):
            await guard.record("a@example.com", None, False)
        clock.advance(minutes=10)

        status = await guard.check("a@example.com")
        assert status.blocked
        assert status.lock_remaining_minutes == 20

    async def test_partial_minute_rounds_up_and_never_reports_zero(self, guard, clock):
        for _ in range(5):
            await guard.record("a@example.com", None, False)
        clock.advance(minutes=14, seconds=59)

        status = await guard.check("a@example.com")
        assert status.blocked
        assert status.lock_remaining_minutes == 16

    async def test_lock_lifts_once_failures_leave_the_window(self, guard, clock):
        for _ in range(5):
            await guard.record("a@example.com", None, False)
        clock.advance(minutes=16)

        status = await guard.check("a@example.com")
        assert not status.blocked
        assert status.remaining_attempts == 5

    async def test_four_failures_then_reset_restores_budget(self, guard):
        for _ in range(4):
            await guard.record("a@example.com", None, False)
        status = await guard.check("a@example.com")
        assert not status.blocked
        assert status.remaining_attempts == 1

        await guard.record("a@example.com", None, True)
        await guard.reset("a@example.com")

        status = await guard.check("a@example.com")
        assert status.remaining_attempts == 5

    async def test_identifiers_are_tracked_independently(self, guard):
        for _ in range(5):
            await guard.record("a@example.com", None, False)

        other = await guard.check("b@example.com")
        assert not other.blocked
        assert other.remaining_attempts == 5

    async def test_identifier_case_is_ignored(self, guard):
        for _ in range(5):
            await guard.record("A@Example.com", None, False)

        status = await guard.check("a@example.com")
        assert status.blocked

    async def test_old_attempts_are_pruned(self, guard, store, clock):
        await guard.record("a@example.com", None, False)
        clock.advance(hours=25)
        await guard.record("b@example.com", None, False)

        identifiers = [attempt.identifier for attempt in store.login_attempts]
        assert identifiers == ["b@example.com"]

    async def test_successes_are_logged_but_not_counted(self, guard, store):
        await guard.record("a@example.com", "10.0.0.2", True)

        assert len(store.login_attempts) == 1
        assert store.login_attempts[0].success is True
        status = await guard.check("a@example.com")
        assert status.remaining_attempts == 5


class TestCacheBackedGuard:
    async def test_five_failures_lock(self, cached_guard, store):
        for _ in range(5):
            await cached_guard.record("a@example.com", None, False)

        status = await cached_guard.check("a@example.com")
        assert status.blocked
        assert status.lock_remaining_minutes == 30
        # the store log is bypassed entirely
        assert store.login_attempts == []

    async def test_reset_clears_cache(self, cached_guard):
        for _ in range(4):
            await cached_guard.record("a@example.com", None, False)
        await cached_guard.reset("a@example.com")

        status = await cached_guard.check("a@example.com")
        assert status.remaining_attempts == 5
