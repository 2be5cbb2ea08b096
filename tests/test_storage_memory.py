"""Unit tests for the in-memory identity store primitives.

Tests for:
- User provisioning and account lock stamping
- Conditional token consumption
- Session touch cap and terminal revocation
- Counter increment-or-create and lockout upserts
- CAPTCHA single use, CSRF compare-and-swap
- Transaction rollback and maintenance deletes
"""

import threading
import uuid
from datetime import timedelta

import pytest

from conftest import T0
from linkguard.storage.errors import ConstraintViolation, StorageError
from linkguard.storage.memory import MemoryStore
from linkguard.storage.models import CaptchaChallenge, MagicLinkToken, Session


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def test_user(memory_store):
    return memory_store.get_or_create_user("alice@example.com", T0)


def make_token(user_id, *, ttl_minutes=15, token_id=None):
    return MagicLinkToken(
        id=token_id or str(uuid.uuid4()),
        user_id=user_id,
        secret_hash="secret-hash",
        fingerprint_hash="fp-hash",
        created_at=T0,
        expires_at=T0 + timedelta(minutes=ttl_minutes),
    )


def make_session(user_id, *, session_id=None, absolute=timedelta(days=1)):
    return Session(
        id=session_id or str(uuid.uuid4()),
        user_id=user_id,
        created_at=T0,
        last_seen_at=T0,
        absolute_expires_at=T0 + absolute,
        device_snapshot={"user_agent": "test"},
    )


class TestUsers:
    def test_get_or_create_user_is_idempotent(self, memory_store):
        first = memory_store.get_or_create_user("bob@example.com", T0)
        second = memory_store.get_or_create_user("bob@example.com", T0 + timedelta(hours=1))

        assert first.id == second.id
        assert second.created_at == T0

    def test_returned_rows_are_copies(self, memory_store, test_user):
        test_user.locked_until = T0 + timedelta(days=1)
        assert memory_store.get_user(test_user.id).locked_until is None

    def test_locked_until_never_decreases(self, memory_store, test_user):
        later = T0 + timedelta(hours=2)
        memory_store.set_user_locked_until(test_user.id, later)
        user = memory_store.set_user_locked_until(test_user.id, T0 + timedelta(minutes=5))

        assert user.locked_until == later
        assert memory_store.clear_user_lock(test_user.id) is True
        assert memory_store.get_user(test_user.id).locked_until is None
        assert memory_store.clear_user_lock(test_user.id) is False

    def test_delete_user_cascades_but_keeps_audit(self, memory_store, test_user):
        memory_store.insert_token(make_token(test_user.id))
        memory_store.insert_session(make_session(test_user.id))
        memory_store.append_audit_event("login_success", test_user.id, {}, T0)

        assert memory_store.delete_user(test_user.id) is True

        assert memory_store.tokens == {}
        assert memory_store.sessions == {}
        assert len(memory_store.list_audit_events(subject=test_user.id)) == 1


class TestTokens:
    def test_consume_token_only_once(self, memory_store, test_user):
        token = memory_store.insert_token(make_token(test_user.id))

        first = memory_store.consume_token(token.id, T0 + timedelta(minutes=1))
        second = memory_store.consume_token(token.id, T0 + timedelta(minutes=2))

        assert first is not None and first.consumed_at == T0 + timedelta(minutes=1)
        assert second is None

    def test_consume_expired_token_fails(self, memory_store, test_user):
        token = memory_store.insert_token(make_token(test_user.id))
        assert memory_store.consume_token(token.id, T0 + timedelta(minutes=15)) is None
        assert memory_store.get_token(token.id).consumed_at is None

    def test_insert_token_for_unknown_user_rejected(self, memory_store):
        with pytest.raises(ConstraintViolation):
            memory_store.insert_token(make_token("missing-user"))

    def test_expire_live_tokens(self, memory_store, test_user):
        live = memory_store.insert_token(make_token(test_user.id))
        spent = memory_store.insert_token(make_token(test_user.id))
        memory_store.consume_token(spent.id, T0)

        assert memory_store.expire_live_tokens(test_user.id, T0 + timedelta(minutes=1)) == 1
        assert memory_store.consume_token(live.id, T0 + timedelta(minutes=2)) is None

    def test_concurrent_consume_has_single_winner(self, memory_store, test_user):
        token = memory_store.insert_token(make_token(test_user.id))
        results = []
        barrier = threading.Barrier(16)

        def worker():
            barrier.wait()
            results.append(memory_store.consume_token(token.id, T0 + timedelta(minutes=1)))

        threads = [threading.Thread(target=worker) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(1 for r in results if r is not None) == 1


class TestSessions:
    def test_duplicate_session_id_rejected(self, memory_store, test_user):
        sess = memory_store.insert_session(make_session(test_user.id))
        with pytest.raises(ConstraintViolation):
            memory_store.insert_session(make_session(test_user.id, session_id=sess.id))

    def test_touch_caps_at_absolute_expiry(self, memory_store, test_user):
        slide = timedelta(hours=2)
        sess = memory_store.insert_session(
            make_session(test_user.id, absolute=timedelta(hours=3))
        )

        touched = memory_store.touch_session(sess.id, T0 + timedelta(hours=1, minutes=50), slide)
        assert touched.last_seen_at == T0 + timedelta(hours=1)
        assert touched.last_seen_at + slide <= touched.absolute_expires_at

    def test_touch_idle_expired_session_fails(self, memory_store, test_user):
        slide = timedelta(minutes=30)
        sess = memory_store.insert_session(make_session(test_user.id))
        assert memory_store.touch_session(sess.id, T0 + timedelta(minutes=31), slide) is None

    def test_revoked_session_never_renews(self, memory_store, test_user):
        sess = memory_store.insert_session(make_session(test_user.id))
        assert memory_store.revoke_session(sess.id, T0) is True
        assert memory_store.revoke_session(sess.id, T0) is False
        assert memory_store.touch_session(sess.id, T0, timedelta(hours=1)) is None
        with pytest.raises(ConstraintViolation):
            memory_store.insert_session(make_session(test_user.id, session_id=sess.id))

    def test_revoke_user_sessions_keeps_current(self, memory_store, test_user):
        keep = memory_store.insert_session(make_session(test_user.id))
        memory_store.insert_session(make_session(test_user.id))
        memory_store.insert_session(make_session(test_user.id))

        revoked = memory_store.revoke_user_sessions(test_user.id, T0, except_session_id=keep.id)

        assert revoked == 2
        assert memory_store.get_session(keep.id).revoked_at is None

    def test_rotate_csrf_is_compare_and_swap(self, memory_store, test_user):
        sess = memory_store.insert_session(make_session(test_user.id))
        memory_store.set_session_csrf(sess.id, "old", T0)

        assert memory_store.rotate_session_csrf(sess.id, "wrong", "new", T0) is False
        assert memory_store.rotate_session_csrf(sess.id, "old", "new", T0) is True
        assert memory_store.rotate_session_csrf(sess.id, "old", "newer", T0) is False
        assert memory_store.get_session(sess.id).csrf_hash == "new"


class TestCountersAndLockouts:
    def test_increment_or_create(self, memory_store):
        c1 = memory_store.increment_counter("ip", "1.2.3.4", T0, True, T0)
        c2 = memory_store.increment_counter("ip", "1.2.3.4", T0, True, T0)
        c3 = memory_store.increment_counter("ip", "1.2.3.4", T0, False, T0)

        assert (c1.count, c1.consecutive_failures) == (1, 1)
        assert (c2.count, c2.consecutive_failures) == (2, 2)
        assert (c3.count, c3.consecutive_failures) == (3, 0)

    def test_new_window_starts_a_new_counter(self, memory_store):
        memory_store.increment_counter("ip", "1.2.3.4", T0, True, T0)
        fresh = memory_store.increment_counter(
            "ip", "1.2.3.4", T0 + timedelta(hours=1), True, T0 + timedelta(hours=1)
        )
        assert fresh.count == 1

    def test_lockout_grows_and_never_decreases(self, memory_store):
        kwargs = {"base_seconds": 60, "growth_factor": 2.0, "max_seconds": 3600}
        first = memory_store.extend_lockout("ip:1.2.3.4", "ip_failures", T0, **kwargs)
        second = memory_store.extend_lockout("ip:1.2.3.4", "ip_failures", T0, **kwargs)
        # Earlier clock reading must not pull the lock backwards
        third = memory_store.extend_lockout(
            "ip:1.2.3.4", "ip_failures", T0 - timedelta(hours=1), **kwargs
        )

        assert first.locked_until == T0 + timedelta(seconds=60)
        assert second.locked_until == T0 + timedelta(seconds=120)
        assert third.locked_until == second.locked_until
        assert third.strikes == 3

    def test_lockout_capped_at_max(self, memory_store):
        kwargs = {"base_seconds": 60, "growth_factor": 2.0, "max_seconds": 100}
        for _ in range(5):
            state = memory_store.extend_lockout("email:a@b.c", "r", T0, **kwargs)
        assert state.locked_until == T0 + timedelta(seconds=100)


class TestCaptcha:
    def test_captcha_consumed_once_for_matching_subject(self, memory_store):
        challenge = memory_store.insert_captcha(
            CaptchaChallenge(id="c1", subject="s", issued_at=T0, expires_at=T0 + timedelta(minutes=5))
        )
        assert memory_store.consume_captcha(challenge.id, "s", T0) is False
        assert memory_store.mark_captcha_solved(challenge.id, T0) is True
        assert memory_store.consume_captcha(challenge.id, "other", T0) is False
        assert memory_store.consume_captcha(challenge.id, "s", T0) is True
        assert memory_store.consume_captcha(challenge.id, "s", T0) is False


class TestTransactionsAndAudit:
    def test_transaction_rolls_back_on_error(self, memory_store, test_user):
        with pytest.raises(StorageError):
            with memory_store.transaction():
                memory_store.insert_token(make_token(test_user.id, token_id="t1"))
                memory_store.increment_counter("ip", "1.2.3.4", T0, True, T0)
                raise StorageError("boom")

        assert memory_store.get_token("t1") is None
        assert memory_store.get_counter("ip", "1.2.3.4", T0) is None

    def test_nested_transaction_joins_outer(self, memory_store, test_user):
        with memory_store.transaction():
            with memory_store.transaction():
                memory_store.insert_token(make_token(test_user.id, token_id="t2"))
        assert memory_store.get_token("t2") is not None

    def test_audit_ids_are_monotonic(self, memory_store):
        a = memory_store.append_audit_event("x", "s", {"k": 1}, T0)
        b = memory_store.append_audit_event("y", "s", {}, T0)

        assert b.id > a.id
        assert [e.type for e in memory_store.list_audit_events(subject="s")] == ["y", "x"]
        assert [e.type for e in memory_store.list_audit_events(type="x")] == ["x"]


class TestMaintenanceDeletes:
    def test_only_expired_rows_are_deleted(self, memory_store, test_user):
        live = memory_store.insert_token(make_token(test_user.id, ttl_minutes=60))
        memory_store.insert_token(make_token(test_user.id, ttl_minutes=5))
        slide = timedelta(minutes=30)
        fresh = memory_store.insert_session(make_session(test_user.id))
        memory_store.insert_session(make_session(test_user.id, absolute=timedelta(minutes=20)))
        now = T0 + timedelta(minutes=25)
        memory_store.touch_session(fresh.id, now, slide)

        assert memory_store.delete_expired_tokens(now) == 1
        assert memory_store.get_token(live.id) is not None
        assert memory_store.delete_expired_sessions(now, slide, now - timedelta(days=1)) == 1
        assert memory_store.get_session(fresh.id) is not None

    def test_stale_counters_and_lockouts(self, memory_store):
        memory_store.increment_counter("ip", "k", T0 - timedelta(hours=2), True, T0)
        memory_store.increment_counter("ip", "k", T0, True, T0)
        memory_store.extend_lockout(
            "ip:k", "r", T0 - timedelta(days=2), base_seconds=60, growth_factor=1.0, max_seconds=60
        )

        assert memory_store.delete_stale_counters(T0 - timedelta(hours=1)) == 1
        assert memory_store.get_counter("ip", "k", T0) is not None
        assert memory_store.delete_expired_lockouts(T0) == 1
