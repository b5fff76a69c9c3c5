"""
Tests for audit severity, the hash-chained repository and the queued writer.
"""

from datetime import timedelta

import pytest

from ledgerguard.core.audit import GENESIS_HASH, AuditLogger, AuditRepository, severity_for
from ledgerguard.core.crypto import is_encrypted
from ledgerguard.core.exceptions import AppendOnlyError
from ledgerguard.core.metrics import MetricsCollector
from ledgerguard.core.sessions import SecurityContext, Session
from ledgerguard.core.storage import DocumentStore
from ledgerguard.models.audit import AuditAction, AuditEvent, Severity
from ledgerguard.models.user import utcnow


@pytest.fixture
def repository(store: DocumentStore) -> AuditRepository:
    return AuditRepository(store)


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def audit_logger(repository: AuditRepository, metrics: MetricsCollector) -> AuditLogger:
    return AuditLogger(repository, metrics=metrics)


def failures(metrics: MetricsCollector, reason: str) -> float:
    return metrics.registry.get_sample_value("audit_write_failures_total", {"reason": reason}) or 0.0


def event(action: AuditAction, actor: str = "u1", **kwargs) -> AuditEvent:  # type: ignore[no-untyped-def]
    return AuditEvent(actor=actor, action=action, resource="auth", severity=severity_for(action), **kwargs)


class TestSeverity:
    """Fixed action to severity mapping."""

    @pytest.mark.parametrize("action,expected", [
        (AuditAction.REFRESH_TOKEN_REUSE, Severity.CRITICAL),
        (AuditAction.LOGIN_FAILED, Severity.HIGH),
        (AuditAction.RATE_LIMIT_EXCEEDED, Severity.HIGH),
        (AuditAction.UNAUTHORIZED_ACCESS, Severity.HIGH),
        (AuditAction.SUSPICIOUS_ACTIVITY, Severity.HIGH),
        (AuditAction.PASSWORD_CHANGE, Severity.MEDIUM),
        (AuditAction.PASSWORD_RESET_REQUEST, Severity.MEDIUM),
        (AuditAction.PASSWORD_RESET_FAILED, Severity.MEDIUM),
        (AuditAction.TRANSACTION_DELETE, Severity.MEDIUM),
        (AuditAction.GOAL_DELETE, Severity.MEDIUM),
        (AuditAction.LOGIN_SUCCESS, Severity.LOW),
        (AuditAction.TRANSACTION_VIEW, Severity.LOW),
    ])
    def test_mapping(self, action: AuditAction, expected: Severity) -> None:
        assert severity_for(action) == expected

    def test_accepts_raw_value(self) -> None:
        assert severity_for("LOGIN_FAILED") == Severity.HIGH  # type: ignore[arg-type]


class TestAuditRepository:
    """Append-only, hash-chained storage."""

    @pytest.mark.asyncio
    async def test_details_encrypted_at_rest(self, repository: AuditRepository, store: DocumentStore) -> None:
        stored = await repository.append(event(AuditAction.LOGIN_FAILED, details={"email": "a****e@example.com"}))
        raw = await store.get("audit_events", stored.id)

        assert is_encrypted(raw["details"])  # type: ignore[index]
        assert stored.details == {"email": "a****e@example.com"}

    @pytest.mark.asyncio
    async def test_chain_links_events(self, repository: AuditRepository) -> None:
        first = await repository.append(event(AuditAction.LOGIN_SUCCESS))
        second = await repository.append(event(AuditAction.LOGOUT))

        assert first.prev_hash == GENESIS_HASH
        assert second.prev_hash == first.digest
        assert await repository.verify_chain()

    @pytest.mark.asyncio
    async def test_edited_event_breaks_chain(self, repository: AuditRepository, store: DocumentStore) -> None:
        first = await repository.append(event(AuditAction.LOGIN_FAILED))
        await repository.append(event(AuditAction.LOGIN_SUCCESS))

        store._collections["audit_events"][first.id]["success"] = True
        assert not await repository.verify_chain()

    @pytest.mark.asyncio
    async def test_deleted_event_breaks_chain(self, repository: AuditRepository, store: DocumentStore) -> None:
        first = await repository.append(event(AuditAction.LOGIN_FAILED))
        await repository.append(event(AuditAction.LOGIN_SUCCESS))

        del store._collections["audit_events"][first.id]
        assert not await repository.verify_chain()

    @pytest.mark.asyncio
    async def test_events_are_immutable(self, repository: AuditRepository) -> None:
        stored = await repository.append(event(AuditAction.LOGIN_SUCCESS))
        with pytest.raises(AppendOnlyError):
            await repository.update(stored.id, lambda e: None)

    @pytest.mark.asyncio
    async def test_direct_insert_refused(self, repository: AuditRepository) -> None:
        with pytest.raises(AppendOnlyError):
            await repository.insert(event(AuditAction.LOGIN_SUCCESS))
        assert await repository.verify_chain()
        assert await repository.store.count("audit_events") == 0

    @pytest.mark.asyncio
    async def test_events_for_user_pages_newest_first(self, repository: AuditRepository) -> None:
        now = utcnow()
        for minutes in range(5):
            await repository.append(event(AuditAction.TRANSACTION_VIEW, created_at=now - timedelta(minutes=minutes)))
        await repository.append(event(AuditAction.TRANSACTION_VIEW, actor="someone-else"))

        first_page = await repository.events_for_user("u1", page=1, limit=2)
        last_page = await repository.events_for_user("u1", page=3, limit=2)

        assert first_page.total == 5
        assert first_page.pages == 3
        assert [e.created_at for e in first_page.logs] == [now, now - timedelta(minutes=1)]
        assert len(last_page.logs) == 1

    @pytest.mark.asyncio
    async def test_events_for_user_filters(self, repository: AuditRepository) -> None:
        now = utcnow()
        await repository.append(event(AuditAction.LOGIN_SUCCESS, created_at=now - timedelta(days=2)))
        await repository.append(event(AuditAction.LOGIN_SUCCESS, created_at=now))
        await repository.append(event(AuditAction.LOGOUT, created_at=now))

        logins = await repository.events_for_user("u1", action=AuditAction.LOGIN_SUCCESS)
        recent = await repository.events_for_user("u1", start=now - timedelta(days=1))
        older = await repository.events_for_user("u1", end=now - timedelta(days=1))

        assert logins.total == 2
        assert recent.total == 2
        assert older.total == 1

    @pytest.mark.asyncio
    async def test_empty_history(self, repository: AuditRepository) -> None:
        page = await repository.events_for_user("nobody")
        assert page.total == 0
        assert page.pages == 0
        assert page.logs == []

    @pytest.mark.asyncio
    async def test_security_summary(self, repository: AuditRepository) -> None:
        await repository.append(event(AuditAction.LOGIN_FAILED, success=False))
        await repository.append(event(AuditAction.LOGIN_FAILED, success=False))
        await repository.append(event(AuditAction.LOGIN_SUCCESS))
        await repository.append(event(AuditAction.REFRESH_TOKEN_REUSE, success=False))
        await repository.append(event(AuditAction.LOGIN_FAILED, created_at=utcnow() - timedelta(days=45)))

        summary = await repository.security_summary("u1", window_days=30)

        assert summary.recent_activity == 4
        assert summary.failed_logins == 2
        assert summary.suspicious_activity == 3
        assert summary.period_days == 30

    @pytest.mark.asyncio
    async def test_find_suspicious(self, repository: AuditRepository) -> None:
        await repository.append(event(AuditAction.LOGIN_SUCCESS))
        await repository.append(event(AuditAction.TRANSACTION_CREATE, success=False))
        await repository.append(event(AuditAction.RATE_LIMIT_EXCEEDED, actor="anonymous", success=False))
        await repository.append(event(AuditAction.UNAUTHORIZED_ACCESS, created_at=utcnow() - timedelta(hours=30)))

        found = await repository.find_suspicious(hours=24)

        assert {e.action for e in found} == {"TRANSACTION_CREATE", "RATE_LIMIT_EXCEEDED"}


class TestAuditLogger:
    """Queued, never-failing event recording."""

    @pytest.mark.asyncio
    async def test_events_written_in_order(self, audit_logger: AuditLogger, repository: AuditRepository) -> None:
        await audit_logger.start()
        try:
            audit_logger.log_event("u1", AuditAction.LOGIN_SUCCESS, "auth")
            audit_logger.log_event("u1", AuditAction.LOGOUT, "auth")
            await audit_logger.flush()
        finally:
            await audit_logger.stop()

        page = await repository.events_for_user("u1")
        assert page.total == 2
        assert await repository.verify_chain()

    @pytest.mark.asyncio
    async def test_context_and_masking_applied(self, audit_logger: AuditLogger, repository: AuditRepository) -> None:
        ctx = SecurityContext(client_ip="203.0.113.7", user_agent="", session=Session(id="sess-1"))
        audit_logger.log_event(
            None,
            AuditAction.LOGIN_FAILED,
            "auth",
            details={"email": "alice@example.com", "password": "Secret123!"},
            ctx=ctx,
            success=False,
        )
        await audit_logger.flush()

        stored = (await repository.find_suspicious())[0]
        assert stored.actor == "anonymous"
        assert stored.ip_address == "203.0.113.7"
        assert stored.user_agent == "unknown"
        assert stored.session_id == "sess-1"
        assert stored.severity == "HIGH"
        assert stored.details == {"email": "a***e@example.com", "password": "****"}

    @pytest.mark.asyncio
    async def test_flush_without_worker_drains_inline(
        self, audit_logger: AuditLogger, repository: AuditRepository, metrics: MetricsCollector
    ) -> None:
        audit_logger.log_event("u1", AuditAction.PROFILE_VIEW, "user")
        assert audit_logger.pending == 1

        await audit_logger.flush()

        assert audit_logger.pending == 0
        assert (await repository.events_for_user("u1")).total == 1
        assert metrics.registry.get_sample_value("audit_events_total", {"severity": "LOW"}) == 1.0

    def test_invalid_action_is_reported_not_raised(self, audit_logger: AuditLogger, metrics: MetricsCollector) -> None:
        audit_logger.log_event("u1", "NOT_AN_ACTION", "auth")  # type: ignore[arg-type]

        assert audit_logger.pending == 0
        assert failures(metrics, "build_error") == 1.0

    def test_full_queue_is_reported_not_raised(self, repository: AuditRepository, metrics: MetricsCollector) -> None:
        audit_logger = AuditLogger(repository, metrics=metrics, max_queue_size=1)
        audit_logger.log_event("u1", AuditAction.LOGIN_SUCCESS, "auth")
        audit_logger.log_event("u1", AuditAction.LOGOUT, "auth")

        assert audit_logger.pending == 1
        assert failures(metrics, "queue_full") == 1.0

    @pytest.mark.asyncio
    async def test_write_failure_is_reported(
        self, audit_logger: AuditLogger, metrics: MetricsCollector, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        async def broken_append(event: AuditEvent) -> AuditEvent:
            raise RuntimeError("disk full")

        monkeypatch.setattr(audit_logger.repository, "append", broken_append)
        audit_logger.log_event("u1", AuditAction.LOGIN_SUCCESS, "auth")
        await audit_logger.flush()

        assert failures(metrics, "write_error") == 1.0
        assert audit_logger.pending == 0

    @pytest.mark.asyncio
    async def test_health_follows_worker(self, audit_logger: AuditLogger) -> None:
        assert not audit_logger.is_healthy()
        await audit_logger.start()
        assert audit_logger.is_healthy()
        await audit_logger.stop()
        assert not audit_logger.is_healthy()
