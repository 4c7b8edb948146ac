"""
Tenant-scoped repositories over the kernel tables.
Every query filters on tenant_id. Methods accept an open connection so
several writes can share one transaction; without one they open their own.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Dict, Iterator, List, Optional

from .db import get_db
from .hashing import canonical_json
from .schema import (
    Attachment,
    AuditEvent,
    AuditOutcome,
    DatasetType,
    DeclaredScope,
    Draft,
    DraftStatus,
    IngestionMethod,
    IngestionProfile,
    LedgerState,
    LegalBasis,
    MUTABLE_FIELDS,
    BINDING_FIELDS,
    RetentionPolicy,
    ReviewStatus,
    SealedEvidence,
    SourceSystem,
    StateTransition,
    TrustLevel,
)
from .tenancy import require_tenant


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _parse_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _column_value(name: str, value: Any) -> Any:
    """Python value -> column value for the drafts table."""
    if value is None:
        return None
    if name == "purpose_tags":
        return json.dumps(sorted(set(value)))
    if name == "payload":
        return canonical_json(value)
    if name == "contains_personal_data":
        return 1 if value else 0
    if hasattr(value, "value"):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


class _Repository:
    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path

    @contextmanager
    def _connection(self, conn: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
        else:
            with get_db(self.db_path) as own:
                yield own


class DraftRepository(_Repository):
    """CRUD over drafts."""

    _COLUMNS = (
        "draft_id", "tenant_id", "ingestion_method", "source_system", "dataset_type",
        "declared_scope", "scope_target_id", "rationale", "purpose_tags", "retention_policy",
        "retention_custom_days", "contains_personal_data", "legal_basis", "quarantine_reason",
        "resolution_due_date", "external_reference_id", "snapshot_timestamp",
        "connector_reference", "export_job_id", "supplier_portal_request_id", "payload",
        "status", "created_by", "created_at", "updated_at",
    )
    _UPDATABLE = set(MUTABLE_FIELDS) | set(BINDING_FIELDS) | {"payload"}

    def insert(self, draft: Draft, conn: Optional[sqlite3.Connection] = None):
        require_tenant(draft.tenant_id)
        values = [_column_value(c, getattr(draft, c)) for c in self._COLUMNS]
        placeholders = ", ".join("?" for _ in self._COLUMNS)
        with self._connection(conn) as c:
            c.execute(f"INSERT INTO drafts ({', '.join(self._COLUMNS)}) VALUES ({placeholders})", values)

    def get(self, tenant_id: str, draft_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Draft]:
        tenant_id = require_tenant(tenant_id)
        with self._connection(conn) as c:
            row = c.execute(
                "SELECT * FROM drafts WHERE tenant_id = ? AND draft_id = ?", (tenant_id, draft_id)
            ).fetchone()
        return self._from_row(row) if row else None

    def update_fields(self, tenant_id: str, draft_id: str, fields: Dict[str, Any], updated_at: datetime,
                      conn: Optional[sqlite3.Connection] = None) -> int:
        """Write the given columns; storage triggers refuse binding or post-seal changes."""
        tenant_id = require_tenant(tenant_id)
        unknown = set(fields) - self._UPDATABLE
        if unknown:
            raise ValueError(f"Not updatable: {sorted(unknown)}")

        names = sorted(fields)
        assignments = ", ".join(f"{n} = ?" for n in names) + ", updated_at = ?"
        values = [_column_value(n, fields[n]) for n in names] + [_ts(updated_at), tenant_id, draft_id]
        with self._connection(conn) as c:
            cur = c.execute(
                f"UPDATE drafts SET {assignments} WHERE tenant_id = ? AND draft_id = ?", values
            )
            return cur.rowcount

    def mark_sealed(self, tenant_id: str, draft_id: str, status: DraftStatus, updated_at: datetime,
                    conn: Optional[sqlite3.Connection] = None) -> bool:
        """Conditional DRAFT -> status move. False means someone else already sealed it."""
        tenant_id = require_tenant(tenant_id)
        with self._connection(conn) as c:
            cur = c.execute(
                "UPDATE drafts SET status = ?, updated_at = ? "
                "WHERE tenant_id = ? AND draft_id = ? AND status = 'DRAFT'",
                (status.value, _ts(updated_at), tenant_id, draft_id),
            )
            return cur.rowcount == 1

    @staticmethod
    def _from_row(row: sqlite3.Row) -> Draft:
        return Draft(
            draft_id=row["draft_id"],
            tenant_id=row["tenant_id"],
            ingestion_method=IngestionMethod(row["ingestion_method"]),
            source_system=SourceSystem(row["source_system"]),
            dataset_type=DatasetType(row["dataset_type"]),
            declared_scope=DeclaredScope(row["declared_scope"]),
            scope_target_id=row["scope_target_id"],
            rationale=row["rationale"],
            purpose_tags=json.loads(row["purpose_tags"]),
            retention_policy=RetentionPolicy(row["retention_policy"]),
            retention_custom_days=row["retention_custom_days"],
            contains_personal_data=bool(row["contains_personal_data"]),
            legal_basis=LegalBasis(row["legal_basis"]) if row["legal_basis"] else None,
            quarantine_reason=row["quarantine_reason"],
            resolution_due_date=_parse_date(row["resolution_due_date"]),
            external_reference_id=row["external_reference_id"],
            snapshot_timestamp=_parse_ts(row["snapshot_timestamp"]),
            connector_reference=row["connector_reference"],
            export_job_id=row["export_job_id"],
            supplier_portal_request_id=row["supplier_portal_request_id"],
            payload=json.loads(row["payload"]) if row["payload"] else None,
            status=DraftStatus(row["status"]),
            created_by=row["created_by"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )


class AttachmentRepository(_Repository):
    """Attachment metadata. Bytes live in the blob store."""

    def insert(self, attachment: Attachment, conn: Optional[sqlite3.Connection] = None):
        require_tenant(attachment.tenant_id)
        with self._connection(conn) as c:
            c.execute(
                "INSERT INTO attachments (attachment_id, draft_id, tenant_id, filename, declared_size, "
                "declared_content_type, content_hash, storage_ref, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (attachment.attachment_id, attachment.draft_id, attachment.tenant_id, attachment.filename,
                 attachment.declared_size, attachment.declared_content_type, attachment.content_hash,
                 attachment.storage_ref, _ts(attachment.created_at)),
            )

    def get(self, tenant_id: str, draft_id: str, attachment_id: str,
            conn: Optional[sqlite3.Connection] = None) -> Optional[Attachment]:
        tenant_id = require_tenant(tenant_id)
        with self._connection(conn) as c:
            row = c.execute(
                "SELECT * FROM attachments WHERE tenant_id = ? AND draft_id = ? AND attachment_id = ?",
                (tenant_id, draft_id, attachment_id),
            ).fetchone()
        return self._from_row(row) if row else None

    def list_for_draft(self, tenant_id: str, draft_id: str,
                       conn: Optional[sqlite3.Connection] = None) -> List[Attachment]:
        tenant_id = require_tenant(tenant_id)
        with self._connection(conn) as c:
            rows = c.execute(
                "SELECT * FROM attachments WHERE tenant_id = ? AND draft_id = ? ORDER BY created_at, attachment_id",
                (tenant_id, draft_id),
            ).fetchall()
        return [self._from_row(r) for r in rows]

    def set_content(self, tenant_id: str, attachment_id: str, content_hash: str, storage_ref: str,
                    conn: Optional[sqlite3.Connection] = None) -> bool:
        tenant_id = require_tenant(tenant_id)
        with self._connection(conn) as c:
            cur = c.execute(
                "UPDATE attachments SET content_hash = ?, storage_ref = ? "
                "WHERE tenant_id = ? AND attachment_id = ? AND content_hash IS NULL",
                (content_hash, storage_ref, tenant_id, attachment_id),
            )
            return cur.rowcount == 1

    @staticmethod
    def _from_row(row: sqlite3.Row) -> Attachment:
        return Attachment(
            attachment_id=row["attachment_id"],
            draft_id=row["draft_id"],
            tenant_id=row["tenant_id"],
            filename=row["filename"],
            declared_size=row["declared_size"],
            declared_content_type=row["declared_content_type"],
            content_hash=row["content_hash"],
            storage_ref=row["storage_ref"],
            created_at=_parse_ts(row["created_at"]),
        )


class EvidenceRepository(_Repository):
    """Sealed evidence. Insert and read only; storage rejects UPDATE and DELETE."""

    def insert(self, evidence: SealedEvidence, conn: Optional[sqlite3.Connection] = None):
        require_tenant(evidence.tenant_id)
        with self._connection(conn) as c:
            c.execute(
                "INSERT INTO sealed_evidence (evidence_id, draft_id, tenant_id, ingestion_method, dataset_type, "
                "declared_scope, external_reference_id, ledger_state, payload_hash, metadata_hash, metadata_json, "
                "leaf_hashes, sealed_at, retention_end, trust_level, review_status, seal_signature, sealed_by) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (evidence.evidence_id, evidence.draft_id, evidence.tenant_id, evidence.ingestion_method.value,
                 evidence.dataset_type.value, evidence.declared_scope.value, evidence.external_reference_id,
                 evidence.ledger_state.value, evidence.payload_hash, evidence.metadata_hash,
                 canonical_json(evidence.metadata_json), json.dumps(evidence.leaf_hashes),
                 _ts(evidence.sealed_at), _ts(evidence.retention_end), evidence.trust_level.value,
                 evidence.review_status.value, evidence.seal_signature, evidence.sealed_by),
            )

    def get(self, tenant_id: str, evidence_id: str,
            conn: Optional[sqlite3.Connection] = None) -> Optional[SealedEvidence]:
        tenant_id = require_tenant(tenant_id)
        with self._connection(conn) as c:
            row = c.execute(
                "SELECT * FROM sealed_evidence WHERE tenant_id = ? AND evidence_id = ?", (tenant_id, evidence_id)
            ).fetchone()
        return self._from_row(row) if row else None

    def get_by_draft(self, tenant_id: str, draft_id: str,
                     conn: Optional[sqlite3.Connection] = None) -> Optional[SealedEvidence]:
        tenant_id = require_tenant(tenant_id)
        with self._connection(conn) as c:
            row = c.execute(
                "SELECT * FROM sealed_evidence WHERE tenant_id = ? AND draft_id = ?", (tenant_id, draft_id)
            ).fetchone()
        return self._from_row(row) if row else None

    def find_by_idempotency_key(self, tenant_id: str, dataset_type: DatasetType, external_reference_id: str,
                                conn: Optional[sqlite3.Connection] = None) -> Optional[SealedEvidence]:
        tenant_id = require_tenant(tenant_id)
        with self._connection(conn) as c:
            row = c.execute(
                "SELECT * FROM sealed_evidence WHERE tenant_id = ? AND dataset_type = ? AND external_reference_id = ?",
                (tenant_id, DatasetType(dataset_type).value, external_reference_id),
            ).fetchone()
        return self._from_row(row) if row else None

    def list_ids(self, tenant_id: str, conn: Optional[sqlite3.Connection] = None) -> List[str]:
        tenant_id = require_tenant(tenant_id)
        with self._connection(conn) as c:
            rows = c.execute(
                "SELECT evidence_id FROM sealed_evidence WHERE tenant_id = ? ORDER BY sealed_at", (tenant_id,)
            ).fetchall()
        return [r["evidence_id"] for r in rows]

    @staticmethod
    def _from_row(row: sqlite3.Row) -> SealedEvidence:
        return SealedEvidence(
            evidence_id=row["evidence_id"],
            draft_id=row["draft_id"],
            tenant_id=row["tenant_id"],
            ingestion_method=IngestionMethod(row["ingestion_method"]),
            dataset_type=DatasetType(row["dataset_type"]),
            declared_scope=DeclaredScope(row["declared_scope"]),
            external_reference_id=row["external_reference_id"],
            ledger_state=LedgerState(row["ledger_state"]),
            payload_hash=row["payload_hash"],
            metadata_hash=row["metadata_hash"],
            metadata_json=json.loads(row["metadata_json"]),
            leaf_hashes=json.loads(row["leaf_hashes"]),
            sealed_at=_parse_ts(row["sealed_at"]),
            retention_end=_parse_ts(row["retention_end"]),
            trust_level=TrustLevel(row["trust_level"]),
            review_status=ReviewStatus(row["review_status"]),
            seal_signature=row["seal_signature"],
            sealed_by=row["sealed_by"],
        )


class StateHistoryRepository(_Repository):
    """Append-only transition log per evidence record and flow."""

    def append(self, transition: StateTransition, conn: Optional[sqlite3.Connection] = None):
        require_tenant(transition.tenant_id)
        with self._connection(conn) as c:
            c.execute(
                "INSERT INTO state_history (evidence_id, tenant_id, flow, sequence, from_state, to_state, "
                "reason, actor, transitioned_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (transition.evidence_id, transition.tenant_id, transition.flow, transition.sequence,
                 transition.from_state, transition.to_state, transition.reason, transition.actor,
                 _ts(transition.transitioned_at)),
            )

    def list_for_evidence(self, tenant_id: str, evidence_id: str, flow: Optional[str] = None,
                          conn: Optional[sqlite3.Connection] = None) -> List[StateTransition]:
        tenant_id = require_tenant(tenant_id)
        query = "SELECT * FROM state_history WHERE tenant_id = ? AND evidence_id = ?"
        params = [tenant_id, evidence_id]
        if flow:
            query += " AND flow = ?"
            params.append(flow)
        query += " ORDER BY flow, sequence"
        with self._connection(conn) as c:
            rows = c.execute(query, params).fetchall()
        return [
            StateTransition(
                evidence_id=r["evidence_id"],
                tenant_id=r["tenant_id"],
                flow=r["flow"],
                sequence=r["sequence"],
                from_state=r["from_state"],
                to_state=r["to_state"],
                reason=r["reason"],
                actor=r["actor"],
                transitioned_at=_parse_ts(r["transitioned_at"]),
            )
            for r in rows
        ]


class AuditRepository(_Repository):
    """Append-only audit events."""

    def insert(self, event: AuditEvent, conn: Optional[sqlite3.Connection] = None):
        require_tenant(event.tenant_id)
        with self._connection(conn) as c:
            c.execute(
                "INSERT INTO audit_events (event_id, tenant_id, correlation_id, event_type, subject_id, actor, "
                "created_at, outcome, detail) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (event.event_id, event.tenant_id, event.correlation_id, event.event_type, event.subject_id,
                 event.actor, _ts(event.created_at), event.outcome.value, canonical_json(event.detail)),
            )

    def list_for_tenant(self, tenant_id: str, subject_id: Optional[str] = None, event_type: Optional[str] = None,
             limit: int = 100, conn: Optional[sqlite3.Connection] = None) -> List[AuditEvent]:
        tenant_id = require_tenant(tenant_id)
        query = "SELECT * FROM audit_events WHERE tenant_id = ?"
        params: List[Any] = [tenant_id]
        if subject_id:
            query += " AND subject_id = ?"
            params.append(subject_id)
        if event_type:
            query += " AND event_type = ?"
            params.append(event_type)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)
        with self._connection(conn) as c:
            rows = c.execute(query, params).fetchall()
        return [
            AuditEvent(
                event_id=r["event_id"],
                tenant_id=r["tenant_id"],
                correlation_id=r["correlation_id"],
                event_type=r["event_type"],
                subject_id=r["subject_id"],
                actor=r["actor"],
                created_at=_parse_ts(r["created_at"]),
                outcome=AuditOutcome(r["outcome"]),
                detail=json.loads(r["detail"]),
            )
            for r in rows
        ]


class IngestionProfileRepository(_Repository):
    """Read-only to the kernel; upsert exists for ops tooling."""

    def upsert(self, profile: IngestionProfile, conn: Optional[sqlite3.Connection] = None):
        require_tenant(profile.tenant_id)
        with self._connection(conn) as c:
            c.execute(
                "INSERT OR REPLACE INTO ingestion_profiles (profile_id, tenant_id, dataset_type, entity_type, "
                "ingestion_path, authority_type, status, expires_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (profile.profile_id, profile.tenant_id, DatasetType(profile.dataset_type).value,
                 profile.entity_type, profile.ingestion_path, profile.authority_type, profile.status,
                 _ts(profile.expires_at)),
            )

    def get_active(self, tenant_id: str, dataset_type: DatasetType, now: datetime,
                   conn: Optional[sqlite3.Connection] = None) -> Optional[IngestionProfile]:
        tenant_id = require_tenant(tenant_id)
        with self._connection(conn) as c:
            rows = c.execute(
                "SELECT * FROM ingestion_profiles WHERE tenant_id = ? AND dataset_type = ? AND status = 'ACTIVE'",
                (tenant_id, DatasetType(dataset_type).value),
            ).fetchall()
        for r in rows:
            profile = IngestionProfile(
                profile_id=r["profile_id"],
                tenant_id=r["tenant_id"],
                dataset_type=DatasetType(r["dataset_type"]),
                entity_type=r["entity_type"],
                ingestion_path=r["ingestion_path"],
                authority_type=r["authority_type"],
                status=r["status"],
                expires_at=_parse_ts(r["expires_at"]),
            )
            if profile.is_active(now):
                return profile
        return None
