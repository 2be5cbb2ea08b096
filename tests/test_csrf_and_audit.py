from datetime import timedelta

import pytest

from linkguard.service.audit import AuditEventType, AuditLog
from linkguard.service.csrf import CsrfGuard
from linkguard.service.errors import CsrfMismatchError, NotFoundError, SessionRevokedError
from linkguard.service.sessions import SessionManager
from linkguard.storage.errors import StorageError


@pytest.fixture
def audit(store, clock):
    return AuditLog(store, clock=clock)


@pytest.fixture
def session(store, clock):
    user = store.get_or_create_user("alice@example.com", clock())
    return SessionManager(store, clock=clock).create(user.id)


@pytest.fixture
def guard(store, audit, clock):
    return CsrfGuard(store, audit=audit, clock=clock)


class TestCsrfGuard:
    def test_issue_stores_hash_only(self, guard, store, session):
        value = guard.issue(session.id)

        assert store.get_session(session.id).csrf_hash != value
        assert guard.validate(session.id, value)
        assert not guard.validate(session.id, "forged")
        assert not guard.validate(session.id, None)

    def test_rotation_kills_old_value(self, guard, session):
        old = guard.issue(session.id)
        new = guard.rotate(session.id, old)

        assert new != old
        assert guard.validate(session.id, new)
        with pytest.raises(CsrfMismatchError):
            guard.rotate(session.id, old)

    def test_mismatch_is_audited(self, guard, store, session):
        guard.issue(session.id)
        with pytest.raises(CsrfMismatchError):
            guard.rotate(session.id, "forged")
        with pytest.raises(CsrfMismatchError):
            guard.rotate(session.id, None)

        events = store.list_audit_events(type="csrf_mismatch")
        assert [e.metadata["presented"] for e in events] == [False, True]

    def test_issue_on_revoked_or_missing_session(self, guard, store, session, clock):
        store.revoke_session(session.id, clock())
        with pytest.raises(SessionRevokedError):
            guard.issue(session.id)
        with pytest.raises(NotFoundError):
            guard.issue("missing")

    def test_revoked_session_fails_validation(self, guard, store, session, clock):
        value = guard.issue(session.id)
        store.revoke_session(session.id, clock())
        assert not guard.validate(session.id, value)


class FlakyStore:
    """Audit store whose first ``failures`` writes raise."""

    def __init__(self, inner, failures):
        self.inner = inner
        self.failures = failures

    def append_audit_event(self, *args):
        if self.failures > 0:
            self.failures -= 1
            raise StorageError("store unavailable")
        return self.inner.append_audit_event(*args)


class TestAuditLog:
    def test_record_accepts_enum_and_string(self, audit, store, clock):
        a = audit.record(AuditEventType.LOGIN_SUCCESS, "user-1", {"session": "s"})
        b = audit.record("login_failed", "user-1")

        assert (a.type, b.type) == ("login_success", "login_failed")
        assert a.timestamp == clock()
        assert b.metadata == {}

    def test_failed_write_never_raises_and_is_marked(self, store, clock):
        audit = AuditLog(FlakyStore(store, failures=1), clock=clock)

        assert audit.record(AuditEventType.LOGIN_FAILED, "user-1") is None

        degraded = store.list_audit_events(type="audit_degraded")
        assert len(degraded) == 1
        assert degraded[0].metadata == {"lost_type": "login_failed", "error_type": "StorageError"}

    def test_double_failure_still_does_not_raise(self, store, clock):
        audit = AuditLog(FlakyStore(store, failures=2), clock=clock)
        assert audit.record(AuditEventType.LOGIN_FAILED, "user-1") is None
        assert store.list_audit_events() == []

    def test_events_are_ordered(self, audit, store, clock):
        audit.record("a", "s")
        clock.advance(seconds=1)
        audit.record("b", "s")
        events = store.list_audit_events(subject="s")
        assert events[0].timestamp - events[1].timestamp == timedelta(seconds=1)
        assert events[0].id > events[1].id
