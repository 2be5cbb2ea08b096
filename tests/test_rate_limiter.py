"""Tests for fixed-window counters, progressive CAPTCHA and lockouts."""

import threading
from datetime import timedelta

import pytest

from conftest import make_settings
from linkguard.config import LockoutGrowth
from linkguard.service.audit import AuditLog
from linkguard.service.errors import ValidationError
from linkguard.service.rate_limit import (
    SCOPE_EMAIL,
    SCOPE_EMAIL_IP,
    SCOPE_IP,
    AttemptOutcome,
    Decision,
    DecisionAction,
    RateLimiter,
    most_restrictive,
    normalize_email,
    scope_key,
)


@pytest.fixture
def make_limiter(store, clock):
    def _make(**overrides):
        settings = make_settings(**overrides)
        return RateLimiter(store, settings, audit=AuditLog(store, clock=clock), clock=clock)

    return _make


class TestThresholds:
    def test_soft_then_hard_threshold(self, make_limiter):
        """Attempts 3 through 9 need a CAPTCHA, attempt 10 is denied."""
        limiter = make_limiter(rate_limit_email_ip_soft=3, rate_limit_email_ip_hard=10)
        key = "alice@example.com|203.0.113.7"

        actions = []
        for _ in range(10):
            decision = limiter.check(SCOPE_EMAIL_IP, key)
            actions.append(decision.action)
            if not decision.denied:
                limiter.record_attempt(SCOPE_EMAIL_IP, key, AttemptOutcome.SUCCESS)

        assert actions[:2] == [DecisionAction.ALLOW] * 2
        assert actions[2:9] == [DecisionAction.REQUIRE_CAPTCHA] * 7
        assert actions[9] == DecisionAction.DENY

    def test_hard_denial_lasts_until_window_end(self, make_limiter, clock):
        limiter = make_limiter(rate_limit_ip_soft=1, rate_limit_ip_hard=2)
        limiter.record_attempt(SCOPE_IP, "203.0.113.7", AttemptOutcome.SUCCESS)

        decision = limiter.check(SCOPE_IP, "203.0.113.7")

        assert decision.denied
        assert decision.locked_until == limiter.window_start(clock()) + limiter.window

    def test_new_window_resets_volume(self, make_limiter, clock):
        limiter = make_limiter(rate_limit_ip_soft=1, rate_limit_ip_hard=2)
        limiter.record_attempt(SCOPE_IP, "203.0.113.7", AttemptOutcome.SUCCESS)
        assert limiter.check(SCOPE_IP, "203.0.113.7").denied

        clock.advance(seconds=limiter.settings.rate_limit_window_seconds)

        assert not limiter.check(SCOPE_IP, "203.0.113.7").denied

    def test_consecutive_failures_require_captcha(self, make_limiter):
        limiter = make_limiter(captcha_failure_threshold=2, rate_limit_ip_soft=50)
        for _ in range(2):
            limiter.record_attempt(SCOPE_IP, "203.0.113.7", AttemptOutcome.FAILURE)

        decision = limiter.check(SCOPE_IP, "203.0.113.7")
        assert decision.requires_captcha
        assert decision.reason == "consecutive_failures"

    def test_success_resets_streak_not_volume(self, make_limiter, clock):
        limiter = make_limiter()
        for _ in range(3):
            limiter.record_attempt(SCOPE_IP, "203.0.113.7", AttemptOutcome.FAILURE)
        counter = limiter.record_attempt(SCOPE_IP, "203.0.113.7", "success")

        assert counter.count == 4
        assert counter.consecutive_failures == 0

    def test_unknown_scope_rejected(self, make_limiter):
        limiter = make_limiter()
        with pytest.raises(KeyError):
            limiter.check("device", "x")


class TestLockouts:
    def test_failures_block_before_verification(self, make_limiter):
        """Ten failed attempts against one email+ip key; the sixth onwards is denied."""
        limiter = make_limiter(
            lockout_email_ip_failures=5,
            rate_limit_email_ip_soft=100,
            rate_limit_email_ip_hard=100,
            captcha_failure_threshold=100,
        )
        key = scope_key(SCOPE_EMAIL_IP, email="Alice@Example.com", ip="203.0.113.7:443")

        decisions = []
        for _ in range(10):
            decision = limiter.check(SCOPE_EMAIL_IP, key)
            decisions.append(decision)
            if not decision.denied:
                limiter.record_attempt(SCOPE_EMAIL_IP, key, AttemptOutcome.FAILURE)

        assert all(d.allowed for d in decisions[:5])
        assert all(d.denied and d.reason == "lockout" for d in decisions[5:])

    def test_lockout_escalates_and_is_audited(self, make_limiter, store, clock):
        limiter = make_limiter(
            lockout_ip_failures=2, lockout_base_seconds=60, lockout_max_seconds=600
        )
        for _ in range(3):
            limiter.record_attempt(SCOPE_IP, "198.51.100.1", AttemptOutcome.FAILURE)

        state = limiter.lockout(SCOPE_IP, "198.51.100.1")
        assert state.strikes == 2
        assert state.locked_until == clock() + timedelta(seconds=120)
        assert state.reason == "ip_consecutive_failures"
        events = store.list_audit_events(type="lockout_created")
        assert len(events) == 2
        assert events[0].metadata["scope"] == "ip"

    def test_fixed_growth_never_shortens(self, make_limiter, clock):
        limiter = make_limiter(
            lockout_ip_failures=1,
            lockout_base_seconds=60,
            lockout_growth=LockoutGrowth.FIXED,
        )
        limiter.record_attempt(SCOPE_IP, "198.51.100.1", AttemptOutcome.FAILURE)
        first = limiter.lockout(SCOPE_IP, "198.51.100.1").locked_until
        clock.advance(seconds=10)
        limiter.record_attempt(SCOPE_IP, "198.51.100.1", AttemptOutcome.FAILURE)
        second = limiter.lockout(SCOPE_IP, "198.51.100.1").locked_until

        assert second >= first
        assert second == clock() + timedelta(seconds=60)

    def test_lockout_expires(self, make_limiter, clock):
        limiter = make_limiter(lockout_ip_failures=1, lockout_base_seconds=60)
        limiter.record_attempt(SCOPE_IP, "198.51.100.1", AttemptOutcome.FAILURE)
        assert limiter.check(SCOPE_IP, "198.51.100.1").denied

        clock.advance(seconds=61)

        assert limiter.lockout(SCOPE_IP, "198.51.100.1") is None

    def test_email_lockout_stamps_account_and_clears(self, make_limiter, store, clock):
        limiter = make_limiter(lockout_email_failures=1, lockout_base_seconds=60)
        user = store.get_or_create_user("alice@example.com", clock())

        limiter.record_attempt(SCOPE_EMAIL, "alice@example.com", AttemptOutcome.FAILURE)
        assert store.get_user(user.id).is_locked(clock())

        assert limiter.clear_lockout(SCOPE_EMAIL, "alice@example.com", actor="ops") is True
        assert store.get_user(user.id).locked_until is None
        assert limiter.check(SCOPE_EMAIL, "alice@example.com").allowed
        cleared = store.list_audit_events(type="lockout_cleared")
        assert cleared[0].metadata == {"scope": "email", "actor": "ops"}

    def test_clear_without_lockout_is_noop(self, make_limiter, store):
        limiter = make_limiter()
        assert limiter.clear_lockout(SCOPE_IP, "198.51.100.1") is False
        assert store.list_audit_events(type="lockout_cleared") == []


def test_concurrent_attempts_lose_no_updates(make_limiter, store, clock):
    limiter = make_limiter()
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        for _ in range(25):
            limiter.record_attempt(SCOPE_IP, "203.0.113.7", AttemptOutcome.SUCCESS)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    counter = store.get_counter(SCOPE_IP, "203.0.113.7", limiter.window_start(clock()))
    assert counter.count == 200


def test_most_restrictive_prefers_latest_denial(clock):
    allow = Decision(DecisionAction.ALLOW, SCOPE_IP)
    captcha = Decision(DecisionAction.REQUIRE_CAPTCHA, SCOPE_EMAIL)
    short = Decision(DecisionAction.DENY, SCOPE_IP, locked_until=clock() + timedelta(minutes=1))
    long = Decision(DecisionAction.DENY, SCOPE_EMAIL_IP, locked_until=clock() + timedelta(hours=1))

    assert most_restrictive(allow, captcha) is captcha
    assert most_restrictive(allow, short, long, captcha) is long


def test_scope_key_normalizes_inputs():
    assert normalize_email("  Alice@Example.COM ") == "alice@example.com"
    assert scope_key(SCOPE_IP, ip="[::ffff:203.0.113.7]:80") == "203.0.113.7"
    with pytest.raises(ValidationError):
        normalize_email("not-an-email")
    with pytest.raises(ValidationError):
        scope_key("device", email="a@b.c")
