"""
Audit trail logger.
Every mutation attempt, accepted or rejected, is appended here. A failed append fails the operation.
"""

import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from util.logging import logger, sanitize_payload

from . import config
from .dao import AuditRepository
from .db import translate_sqlite_error
from .errors import (
    AuditWriteError,
    FieldValidationError,
    KernelError,
    StorageTimeoutError,
    TenantContextMissing,
    TenantIsolationError,
)
from .schema import AuditEvent, AuditOutcome

# Event types
DRAFT_CREATED = "DRAFT_CREATED"
DRAFT_CREATE_REJECTED = "DRAFT_CREATE_REJECTED"
DRAFT_UPDATED = "DRAFT_UPDATED"
DRAFT_UPDATE_REJECTED = "DRAFT_UPDATE_REJECTED"
PAYLOAD_ATTACHED = "PAYLOAD_ATTACHED"
PAYLOAD_REJECTED = "PAYLOAD_REJECTED"
ATTACHMENT_REGISTERED = "ATTACHMENT_REGISTERED"
ATTACHMENT_UPLOADED = "ATTACHMENT_UPLOADED"
ATTACHMENT_REJECTED = "ATTACHMENT_REJECTED"
EVIDENCE_SEALED = "EVIDENCE_SEALED"
SEAL_REPLAYED = "SEAL_REPLAYED"
SEAL_REJECTED = "SEAL_REJECTED"
EVIDENCE_MUTATION_BLOCKED = "EVIDENCE_MUTATION_BLOCKED"
STATE_TRANSITIONED = "STATE_TRANSITIONED"
STATE_TRANSITION_BLOCKED = "STATE_TRANSITION_BLOCKED"
TENANT_ISOLATION_VIOLATION = "TENANT_ISOLATION_VIOLATION"


class AuditTrail:
    """Append-only audit writer backed by AuditRepository."""

    def __init__(self, repository: AuditRepository, clock, ids):
        self.repository = repository
        self.clock = clock
        self.ids = ids

    def log(self, tenant_id: str, correlation_id: str, event_type: str, subject_id: str, actor: str,
            detail: Optional[Dict[str, Any]] = None, outcome: AuditOutcome = AuditOutcome.SUCCESS,
            conn: Optional[sqlite3.Connection] = None) -> AuditEvent:
        """
        Append one audit event.

        With `conn` the write joins the caller's transaction; without it the
        event is committed on its own, which is how rejections are recorded.
        """
        event = AuditEvent(
            event_id=self.ids.new_id("aud"),
            tenant_id=tenant_id,
            correlation_id=correlation_id,
            event_type=event_type,
            subject_id=subject_id or "-",
            actor=actor,
            created_at=self.clock.now(),
            outcome=AuditOutcome(outcome),
            detail=detail or {},
        )

        try:
            self.repository.insert(event, conn)
        except sqlite3.Error as e:
            logger.log_audit_write(event_type, tenant_id, event.subject_id, event.outcome.value, status="failed")
            translated = translate_sqlite_error(e)
            if isinstance(translated, StorageTimeoutError):
                raise translated from e
            raise AuditWriteError(f"Audit write failed for {event_type}") from e

        logger.log_audit_write(event_type, tenant_id, event.subject_id, event.outcome.value)
        if config.AUDIT_LOG_LEVEL == "verbose":
            logger.debug(f"Audit detail for {event.event_id}: {sanitize_payload(event.detail)}")
        return event

    def log_rejection(self, tenant_id: str, correlation_id: str, event_type: str, subject_id: str, actor: str,
                      error) -> AuditEvent:
        """Record a rejected operation in its own transaction."""
        detail = error.to_dict() if hasattr(error, "to_dict") else {"message": str(error)}
        return self.log(tenant_id, correlation_id, event_type, subject_id, actor, detail, AuditOutcome.REJECTED)

    @contextmanager
    def rejections(self, tenant_id: str, correlation_id: str, event_type: str, subject_id: str, actor: str):
        """
        Audit every kernel rejection raised inside the block, then re-raise it.

        Cross-tenant references are recorded as TENANT_ISOLATION_VIOLATION.
        Infrastructure failures are not audited here; they never reached a decision.
        """
        try:
            yield
        except (StorageTimeoutError, AuditWriteError, TenantContextMissing):
            raise
        except TenantIsolationError as e:
            self.log_rejection(tenant_id, correlation_id, TENANT_ISOLATION_VIOLATION, subject_id, actor, e)
            raise
        except KernelError as e:
            if isinstance(e, FieldValidationError):
                logger.log_validation_rejection(event_type, tenant_id, [f.to_dict() for f in e.field_errors])
            self.log_rejection(tenant_id, correlation_id, event_type, subject_id, actor, e)
            raise

    def list_events(self, tenant_id: str, subject_id: Optional[str] = None, limit: int = 100) -> List[AuditEvent]:
        """The tenant's trail, newest first."""
        return self.repository.list_for_tenant(tenant_id, subject_id=subject_id, limit=limit)
