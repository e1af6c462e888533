from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
import logging
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantcore.core.clock import TimeProvider, utcnow
from tenantcore.core.errors import (
    AuthorizationDeniedError,
    IsolationPublishError,
    TenancyError,
)
from tenantcore.domain.context import RequestContext
from tenantcore.domain.models import AuditEvent
from tenantcore.persistence.isolation import ClaimsPublisher, IsolationBridge, SessionClaims


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password", "credential", "claims"]
_REDACTED_VALUE = "[REDACTED]"


class AuditAction(StrEnum):
    CREATE = "CREATE"
    READ = "READ"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    LIST = "LIST"
    PURGE = "PURGE"
    PERMISSION_GRANTED = "PERMISSION_GRANTED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    PERMISSION_REVOKED = "PERMISSION_REVOKED"
    ROLE_ASSIGNED = "ROLE_ASSIGNED"
    ROLE_REVOKED = "ROLE_REVOKED"
    ROLE_LINKED = "ROLE_LINKED"
    TENANT_PROVISIONED = "TENANT_PROVISIONED"


class AuditSeverity(StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class AuditOutcome(StrEnum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


@dataclass(frozen=True)
class AuditRecord:
    event_type: str
    severity: str
    outcome: str
    description: str
    occurred_at: datetime
    tenant_id: str | None
    actor_id: str | None
    actor_type: str
    session_id: str | None = None
    resource_type: str | None = None
    resource_id: str | None = None
    correlation_id: str | None = None
    request_method: str | None = None
    request_url: str | None = None
    error_code: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_sink_payload(self) -> dict[str, Any]:
        # Wire shape expected by external audit sinks.
        return {
            "type": self.event_type,
            "severity": self.severity,
            "description": self.description,
            "userId": self.actor_id,
            "sessionId": self.session_id,
            "tenantId": self.tenant_id,
            "resource": {"type": self.resource_type, "id": self.resource_id},
            "request": {"method": self.request_method, "url": self.request_url},
            "metadata": {
                **self.metadata,
                "correlationId": self.correlation_id,
                "outcome": self.outcome,
                **({"errorCode": self.error_code} if self.error_code else {}),
            },
        }


class AuditSink(Protocol):
    async def write(self, record: AuditRecord) -> None: ...


class DatabaseAuditSink:
    """Appends audit rows in a dedicated session.

    The business transaction has already committed or rolled back by the time
    an event is written, so audit rows never share its fate. With a publisher
    the insert runs under the record's own tenant claims, which is the only
    way through the audit table's row security on PostgreSQL.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        publisher: ClaimsPublisher | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._publisher = publisher

    @classmethod
    def from_bridge(cls, bridge: IsolationBridge) -> DatabaseAuditSink:
        return cls(bridge.session_factory, publisher=bridge.publisher)

    async def write(self, record: AuditRecord) -> None:
        async with self._session_factory() as session:
            if self._publisher is not None:
                await self._publisher.publish(session, writer_claims(record))
            session.add(
                AuditEvent(
                    occurred_at=record.occurred_at,
                    tenant_id=record.tenant_id,
                    actor_id=record.actor_id,
                    actor_type=record.actor_type,
                    session_id=record.session_id,
                    event_type=record.event_type,
                    severity=record.severity,
                    description=record.description,
                    outcome=record.outcome,
                    resource_type=record.resource_type,
                    resource_id=record.resource_id,
                    correlation_id=record.correlation_id,
                    request_method=record.request_method,
                    request_url=record.request_url,
                    metadata_json=record.metadata,
                    error_code=record.error_code,
                )
            )
            await session.commit()


def writer_claims(record: AuditRecord) -> SessionClaims:
    # Writers carry no roles; the audit insert policy only checks the tenant.
    return SessionClaims(
        tenant_id=record.tenant_id or "",
        user_id=record.actor_id,
        role="",
        roles="",
        correlation_id=record.correlation_id or "",
    )


def severity_for(outcome: AuditOutcome, error: BaseException | None = None) -> AuditSeverity:
    if outcome == AuditOutcome.SUCCESS:
        return AuditSeverity.LOW
    if isinstance(error, IsolationPublishError):
        return AuditSeverity.CRITICAL
    if isinstance(error, AuthorizationDeniedError):
        return AuditSeverity.HIGH
    return AuditSeverity.MEDIUM


class AuditRecorder:
    """Best-effort audit emission for request contexts.

    ``record`` never raises: sink failures are logged and swallowed so an audit
    outage cannot mask or override the business outcome.
    """

    def __init__(self, sink: AuditSink | None, *, time_provider: TimeProvider | None = None) -> None:
        self._sink = sink
        self._now = time_provider or utcnow

    def build_record(
        self,
        ctx: RequestContext,
        *,
        action: str,
        outcome: AuditOutcome,
        resource_type: str | None = None,
        resource_id: str | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
        error: BaseException | None = None,
    ) -> AuditRecord:
        error_code = None
        if error is not None:
            error_code = error.code if isinstance(error, TenancyError) else "INTERNAL_ERROR"
        return AuditRecord(
            event_type=str(action),
            severity=severity_for(outcome, error).value,
            outcome=outcome.value,
            description=description or _describe(action, outcome, resource_type),
            occurred_at=self._now(),
            tenant_id=ctx.tenant_id,
            actor_id=ctx.actor_id,
            actor_type=ctx.actor.actor_type,
            session_id=ctx.actor.session_id,
            resource_type=resource_type,
            resource_id=resource_id,
            correlation_id=ctx.correlation_id,
            request_method=ctx.request.method if ctx.request else None,
            request_url=ctx.request.url if ctx.request else None,
            error_code=error_code,
            metadata=sanitize_metadata(metadata or {}),
        )

    async def record(self, ctx: RequestContext, **kwargs: Any) -> AuditRecord | None:
        if self._sink is None:
            return None
        try:
            record = self.build_record(ctx, **kwargs)
            await self._sink.write(record)
        except Exception as exc:  # noqa: BLE001 - audit must never break the caller
            logger.warning(
                "audit_event_write_failed event_type=%s tenant_id=%s correlation_id=%s",
                kwargs.get("action"),
                ctx.tenant_id,
                ctx.correlation_id,
                exc_info=exc,
            )
            return None
        return record


def _describe(action: str, outcome: AuditOutcome, resource_type: str | None) -> str:
    subject = resource_type or "resource"
    verb = str(action).lower().replace("_", " ")
    if outcome == AuditOutcome.SUCCESS:
        return f"{subject} {verb} succeeded"
    return f"{subject} {verb} failed"
