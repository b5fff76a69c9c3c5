"""
Audit log: severity mapping, hash-chained event storage and the
background writer.

Recording an event never fails the request that produced it. Events are
queued and written by a single worker task; anything that goes wrong on
the way is reported on the error channel (a structlog error plus the
``audit_write_failures_total`` counter).
"""

import asyncio
import hashlib
import json
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog

from ..models.audit import ANONYMOUS_ACTOR, AuditAction, AuditEvent, AuditLogPage, SecuritySummary, Severity
from ..models.user import utcnow
from .exceptions import AppendOnlyError
from .fields import AUDIT_CODEC
from .masking import MaskingEngine, get_masking_engine
from .metrics import MetricsCollector
from .sessions import SecurityContext
from .storage import Document, DocumentStore, Repository

logger = structlog.get_logger(__name__)

GENESIS_HASH = "0" * 64

HIGH_SEVERITY_ACTIONS = frozenset({
    AuditAction.LOGIN_FAILED,
    AuditAction.ACCOUNT_LOCKED,
    AuditAction.UNAUTHORIZED_ACCESS,
    AuditAction.SUSPICIOUS_ACTIVITY,
    AuditAction.RATE_LIMIT_EXCEEDED,
})

CRITICAL_SEVERITY_ACTIONS = frozenset({
    AuditAction.REFRESH_TOKEN_REUSE,
})

MEDIUM_SEVERITY_ACTIONS = frozenset({
    AuditAction.PASSWORD_CHANGE,
    AuditAction.PASSWORD_RESET_REQUEST,
    AuditAction.PASSWORD_RESET_SUCCESS,
    AuditAction.PASSWORD_RESET_FAILED,
    AuditAction.SETTINGS_CHANGE,
    AuditAction.TOKEN_REVOKE,
    AuditAction.DATA_EXPORT,
})

SUSPICIOUS_ACTIONS = frozenset({
    AuditAction.UNAUTHORIZED_ACCESS,
    AuditAction.SUSPICIOUS_ACTIVITY,
    AuditAction.RATE_LIMIT_EXCEEDED,
    AuditAction.REFRESH_TOKEN_REUSE,
})


def severity_for(action: AuditAction) -> Severity:
    """Fixed severity of an action."""
    action = AuditAction(action)
    if action in CRITICAL_SEVERITY_ACTIONS:
        return Severity.CRITICAL
    if action in HIGH_SEVERITY_ACTIONS:
        return Severity.HIGH
    if action in MEDIUM_SEVERITY_ACTIONS or action.value.endswith("_DELETE"):
        return Severity.MEDIUM
    return Severity.LOW


def chain_digest(document: Document) -> str:
    """SHA-256 over the stored document, excluding its own digest and version."""
    body = {k: v for k, v in document.items() if k not in ("digest", "version")}
    canonical = json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class AuditRepository(Repository[AuditEvent]):
    """
    Append-only event storage.

    details and error_message are encrypted; every stored event carries the
    digest of its predecessor, so rewriting or deleting history breaks
    verify_chain().
    """

    collection = "audit_events"
    model = AuditEvent
    codec = AUDIT_CODEC

    async def insert(self, entity: AuditEvent) -> AuditEvent:
        raise AppendOnlyError("Audit events are written with append()")

    async def update(self, entity_id: str, mutator: Any) -> AuditEvent:
        raise AppendOnlyError()

    async def append(self, event: AuditEvent) -> AuditEvent:
        def build(previous: Optional[Document]) -> Document:
            prev_hash = previous["digest"] if previous else GENESIS_HASH
            document = self._to_document(event.model_copy(update={"prev_hash": prev_hash, "digest": None}))
            document["digest"] = chain_digest(document)
            return document

        stored = await self.store.append(self.collection, build)
        return self._from_document(stored)

    async def verify_chain(self) -> bool:
        """True if every stored event links to its predecessor and hashes to its digest."""
        expected_prev = GENESIS_HASH
        for document in await self.store.find(self.collection):
            if document.get("prev_hash") != expected_prev or chain_digest(document) != document.get("digest"):
                logger.error("Audit chain broken", event_id=document.get("id"))
                return False
            expected_prev = document["digest"]
        return True

    async def events_for_user(
        self,
        user_id: str,
        action: Optional[AuditAction] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        page: int = 1,
        limit: int = 50,
    ) -> AuditLogPage:
        """One page of a user's events, newest first."""
        page = max(page, 1)
        limit = max(limit, 1)

        documents = await self.store.find(self.collection, lambda doc: doc.get("actor") == user_id)
        events = [self._from_document(doc) for doc in documents]

        if action is not None:
            wanted = AuditAction(action).value
            events = [e for e in events if e.action == wanted]
        if start is not None:
            events = [e for e in events if e.created_at >= start]
        if end is not None:
            events = [e for e in events if e.created_at <= end]

        events.sort(key=lambda e: e.created_at, reverse=True)
        total = len(events)
        offset = (page - 1) * limit

        return AuditLogPage(
            logs=events[offset:offset + limit],
            page=page,
            limit=limit,
            total=total,
            pages=math.ceil(total / limit) if total else 0,
        )

    async def security_summary(self, user_id: str, window_days: int = 30) -> SecuritySummary:
        since = utcnow() - timedelta(days=window_days)
        documents = await self.store.find(self.collection, lambda doc: doc.get("actor") == user_id)
        events = [e for e in (self._from_document(doc) for doc in documents) if e.created_at >= since]

        return SecuritySummary(
            recent_activity=len(events),
            failed_logins=sum(1 for e in events if e.action == AuditAction.LOGIN_FAILED.value),
            suspicious_activity=sum(1 for e in events if e.severity in (Severity.HIGH.value, Severity.CRITICAL.value)),
            period_days=window_days,
        )

    async def find_suspicious(self, hours: int = 24) -> List[AuditEvent]:
        """Failed, high severity or security events of every actor in the last ``hours``, newest first."""
        since = utcnow() - timedelta(hours=hours)
        actions = {action.value for action in SUSPICIOUS_ACTIONS}
        severities = {Severity.HIGH.value, Severity.CRITICAL.value}

        def matches(doc: Document) -> bool:
            return doc.get("success") is False or doc.get("severity") in severities or doc.get("action") in actions

        documents = await self.store.find(self.collection, matches)
        events = [e for e in (self._from_document(doc) for doc in documents) if e.created_at >= since]
        events.sort(key=lambda e: e.created_at, reverse=True)
        return events


class AuditLogger:
    """
    Queue-backed audit writer.

    log_event() only builds the event and enqueues it; the worker started by
    start() persists events in order. flush() waits until everything queued
    so far is written, and drains inline when no worker is running.
    """

    def __init__(
        self,
        repository: AuditRepository,
        masking: Optional[MaskingEngine] = None,
        metrics: Optional[MetricsCollector] = None,
        max_queue_size: int = 10000,
    ) -> None:
        self.repository = repository
        self.masking = masking or get_masking_engine()
        self.metrics = metrics
        self._queue: "asyncio.Queue[AuditEvent]" = asyncio.Queue(maxsize=max_queue_size)
        self._task: Optional[asyncio.Task[None]] = None
        self._running = False

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_writer_loop())
        logger.info("Audit logger started", queue_max_size=self._queue.maxsize)

    async def stop(self) -> None:
        if not self._running:
            return
        await self.flush()
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("Audit logger stopped")

    def is_healthy(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def _report_failure(self, reason: str, action: Any, error: Exception) -> None:
        logger.error(
            "Audit event could not be recorded",
            reason=reason,
            action=str(action),
            error=str(error),
            error_type=type(error).__name__,
        )
        if self.metrics is not None:
            self.metrics.record_audit_failure(reason)

    def log_event(
        self,
        actor: Optional[str],
        action: AuditAction,
        resource: str,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
        ctx: Optional[SecurityContext] = None,
        success: bool = True,
        metadata: Optional[Dict[str, str]] = None,
    ) -> None:
        """Queue one event. Never raises."""
        try:
            event = AuditEvent(
                actor=actor or ANONYMOUS_ACTOR,
                action=action,
                resource=resource,
                resource_id=resource_id,
                details=self.masking.mask_details(details) if details else None,
                error_message=error_message,
                ip_address=ctx.client_ip if ctx else "unknown",
                user_agent=(ctx.user_agent or "unknown") if ctx else "unknown",
                session_id=ctx.session_id if ctx else None,
                success=success,
                severity=severity_for(action),
                metadata=metadata or {},
            )
        except Exception as e:
            self._report_failure("build_error", action, e)
            return

        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull as e:
            self._report_failure("queue_full", action, e)
            return

        if event.severity in (Severity.HIGH.value, Severity.CRITICAL.value):
            logger.warning(
                "Security event",
                action=event.action,
                severity=event.severity,
                actor=event.actor,
                ip_address=event.ip_address,
            )

    async def _write(self, event: AuditEvent) -> None:
        try:
            await self.repository.append(event)
        except Exception as e:
            self._report_failure("write_error", event.action, e)
            return

        if self.metrics is not None:
            self.metrics.record_audit_event(str(event.severity))

    async def _run_writer_loop(self) -> None:
        while self._running:
            event = await self._queue.get()
            try:
                await self._write(event)
            finally:
                self._queue.task_done()

    async def flush(self) -> None:
        """Wait until every event queued so far has been written."""
        if self.is_healthy():
            await self._queue.join()
            return

        while not self._queue.empty():
            event = self._queue.get_nowait()
            try:
                await self._write(event)
            finally:
                self._queue.task_done()


def build_audit_logger(
    store: DocumentStore,
    metrics: Optional[MetricsCollector] = None,
    max_queue_size: int = 10000,
) -> AuditLogger:
    """AuditLogger over the given store."""
    return AuditLogger(AuditRepository(store), metrics=metrics, max_queue_size=max_queue_size)
