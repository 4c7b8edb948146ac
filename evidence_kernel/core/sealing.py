"""
Sealing service.

Turns a ready draft into an immutable SealedEvidence record. The evidence
insert, the draft status move, the initial state history and the audit event
commit together or not at all.
"""

import json
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from util.logging import logger

from . import audit as events
from .audit import AuditTrail
from .blobs import IBlobStore
from .dao import AttachmentRepository, DraftRepository, EvidenceRepository, StateHistoryRepository
from .db import transaction
from .drafts import DraftService
from .errors import FieldValidationError, ImmutableConflictError
from .hashing import canonical_json, hash_bytes, hash_canonical_json, merkle_root, sign_seal, verify_seal
from .idempotency import IdempotencyGuard
from .schema import (
    Attachment,
    Draft,
    DraftStatus,
    IngestionMethod,
    LedgerState,
    ReviewStatus,
    SealedEvidence,
)
from .state_machine import StateMachine
from .validation import compute_retention_end, ledger_state_for, trust_level_for


@dataclass
class SealOutcome:
    evidence: SealedEvidence
    replayed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        body = self.evidence.to_dict()
        body["replayed"] = self.replayed
        return body


@dataclass
class VerificationReport:
    evidence_id: str
    checks: Dict[str, bool]

    @property
    def valid(self) -> bool:
        return all(self.checks.values())

    def to_dict(self) -> Dict[str, Any]:
        return {"evidence_id": self.evidence_id, "valid": self.valid, "checks": self.checks}


def build_metadata(draft: Draft, attachments: List[Attachment]) -> Dict[str, Any]:
    """The declaration as sealed. Ids and server timestamps are left out so equal declarations hash equally."""
    return json.loads(canonical_json({
        "tenant_id": draft.tenant_id,
        "ingestion_method": draft.ingestion_method.value,
        "source_system": draft.source_system.value,
        "dataset_type": draft.dataset_type.value,
        "declared_scope": draft.declared_scope.value,
        "scope_target_id": draft.scope_target_id,
        "rationale": draft.rationale,
        "purpose_tags": sorted(draft.purpose_tags),
        "retention_policy": draft.retention_policy.value,
        "retention_custom_days": draft.retention_custom_days,
        "contains_personal_data": draft.contains_personal_data,
        "legal_basis": draft.legal_basis.value if draft.legal_basis else None,
        "quarantine_reason": draft.quarantine_reason,
        "resolution_due_date": draft.resolution_due_date,
        "external_reference_id": draft.external_reference_id,
        "snapshot_timestamp": draft.snapshot_timestamp,
        "connector_reference": draft.connector_reference,
        "export_job_id": draft.export_job_id,
        "supplier_portal_request_id": draft.supplier_portal_request_id,
        "attachments": sorted(
            (
                {
                    "filename": a.filename,
                    "content_hash": a.content_hash,
                    "declared_size": a.declared_size,
                    "declared_content_type": a.declared_content_type,
                }
                for a in attachments
            ),
            key=lambda a: (a["content_hash"], a["filename"]),
        ),
    }))


def compute_payload_hash(draft: Draft, attachments: List[Attachment]) -> Tuple[str, List[str]]:
    """
    Payload fingerprint and the merkle leaves it was built from.

    With attachments the hash is the merkle root over their content hashes,
    plus the canonical payload hash when a payload is also present. Without
    attachments it is the canonical hash of the payload alone.
    """
    leaves = sorted(a.content_hash for a in attachments)
    if draft.payload is not None and draft.ingestion_method != IngestionMethod.FILE_UPLOAD:
        payload_hash = hash_canonical_json(draft.payload)
        if not leaves:
            return payload_hash, []
        leaves = sorted(leaves + [payload_hash])
    return merkle_root(leaves), leaves


class SealingService:
    """Validation, hashing, idempotency, state and audit as one unit."""

    def __init__(self, drafts: DraftRepository, attachments: AttachmentRepository, evidence: EvidenceRepository,
                 history: StateHistoryRepository, draft_service: DraftService, guard: IdempotencyGuard,
                 state_machine: StateMachine, audit: AuditTrail, blobs: IBlobStore, clock, ids,
                 signing_key: bytes, db_path: Optional[str] = None):
        self.drafts = drafts
        self.attachments = attachments
        self.evidence = evidence
        self.history = history
        self.draft_service = draft_service
        self.guard = guard
        self.state_machine = state_machine
        self.audit = audit
        self.blobs = blobs
        self.clock = clock
        self.ids = ids
        self.signing_key = signing_key
        self.db_path = db_path

    def seal(self, tenant_id: str, draft_id: str, actor: str, correlation_id: str) -> SealOutcome:
        """Seal a draft, or replay the evidence an identical earlier submission produced."""
        with self.audit.rejections(tenant_id, correlation_id, events.SEAL_REJECTED, draft_id, actor):
            draft = self.draft_service.get_draft(tenant_id, draft_id)
            if draft.is_sealed:
                self._raise_already_sealed(draft)

            self.draft_service.check_ingestion_profile(tenant_id, draft.dataset_type)

            attachments = self.attachments.list_for_draft(tenant_id, draft_id)
            errors = self.draft_service.readiness(draft, attachments)
            if errors:
                raise FieldValidationError(errors, message="Draft is not ready to seal")

            payload_hash, leaves = compute_payload_hash(draft, attachments)
            metadata = build_metadata(draft, attachments)

            try:
                outcome = self._commit(draft, attachments, payload_hash, leaves, metadata, actor, correlation_id)
            except sqlite3.IntegrityError:
                # Lost a race on draft_id or on the idempotency key
                sealed = self.evidence.get_by_draft(tenant_id, draft_id)
                if sealed is not None:
                    raise ImmutableConflictError(f"Draft {draft_id} was sealed concurrently",
                                                 evidence_id=sealed.evidence_id)
                decision = self.guard.check(tenant_id, draft.dataset_type, draft.external_reference_id, payload_hash)
                if not decision.is_replay:
                    raise
                if decision.existing.draft_id == draft_id:
                    raise ImmutableConflictError(f"Draft {draft_id} was sealed concurrently",
                                                 evidence_id=decision.existing.evidence_id)
                outcome = self._replay(tenant_id, draft_id, decision.existing, actor, correlation_id)

        if not outcome.replayed:
            logger.log_seal(tenant_id, draft_id, outcome.evidence.evidence_id,
                            outcome.evidence.ledger_state.value, outcome.evidence.payload_hash)
        return outcome

    def _commit(self, draft: Draft, attachments: List[Attachment], payload_hash: str, leaves: List[str],
                metadata: Dict[str, Any], actor: str, correlation_id: str) -> SealOutcome:
        tenant_id = draft.tenant_id
        with transaction(self.db_path) as conn:
            # Status read under the write lock; the earlier check ran outside it
            current = self.drafts.get(tenant_id, draft.draft_id, conn)
            if current is None or current.is_sealed:
                self._raise_already_sealed(draft, conn)

            decision = self.guard.check(tenant_id, draft.dataset_type, draft.external_reference_id, payload_hash,
                                        conn)
            if decision.is_replay:
                return self._replay(tenant_id, draft.draft_id, decision.existing, actor, correlation_id, conn)

            sealed_at = self.clock.now()
            evidence_id = self.ids.new_id("evd")
            metadata_hash = hash_canonical_json(metadata)
            ledger_state = LedgerState(ledger_state_for(draft.declared_scope))

            evidence = SealedEvidence(
                evidence_id=evidence_id,
                draft_id=draft.draft_id,
                tenant_id=tenant_id,
                ingestion_method=draft.ingestion_method,
                dataset_type=draft.dataset_type,
                declared_scope=draft.declared_scope,
                external_reference_id=draft.external_reference_id,
                ledger_state=ledger_state,
                payload_hash=payload_hash,
                metadata_hash=metadata_hash,
                metadata_json=metadata,
                leaf_hashes=leaves,
                sealed_at=sealed_at,
                retention_end=compute_retention_end(sealed_at, draft.retention_policy, draft.retention_custom_days),
                trust_level=trust_level_for(draft.ingestion_method),
                review_status=ReviewStatus.PENDING_REVIEW,
                seal_signature=sign_seal(self.signing_key, evidence_id, payload_hash, metadata_hash,
                                         sealed_at.isoformat()),
                sealed_by=actor,
            )

            if not self.drafts.mark_sealed(tenant_id, draft.draft_id, DraftStatus(ledger_state.value), sealed_at,
                                           conn):
                raise ImmutableConflictError(f"Draft {draft.draft_id} is no longer a draft")
            self.evidence.insert(evidence, conn)
            for entry in self.state_machine.initial_entries(evidence, actor):
                self.history.append(entry, conn)
            self.audit.log(
                tenant_id, correlation_id, events.EVIDENCE_SEALED, evidence_id, actor,
                {"draft_id": draft.draft_id, "ledger_state": ledger_state.value, "payload_hash": payload_hash,
                 "metadata_hash": metadata_hash, "attachment_count": len(attachments)},
                conn=conn,
            )
            evidence.state_history = self.history.list_for_evidence(tenant_id, evidence_id, conn=conn)

        return SealOutcome(evidence)

    def _raise_already_sealed(self, draft: Draft, conn: Optional[sqlite3.Connection] = None):
        sealed = self.evidence.get_by_draft(draft.tenant_id, draft.draft_id, conn)
        raise ImmutableConflictError(
            f"Draft {draft.draft_id} is already sealed",
            evidence_id=sealed.evidence_id if sealed else None,
        )

    def _replay(self, tenant_id: str, draft_id: str, existing: SealedEvidence, actor: str, correlation_id: str,
                conn: Optional[sqlite3.Connection] = None) -> SealOutcome:
        self.audit.log(
            tenant_id, correlation_id, events.SEAL_REPLAYED, existing.evidence_id, actor,
            {"draft_id": draft_id, "external_reference_id": existing.external_reference_id,
             "payload_hash": existing.payload_hash},
            conn=conn,
        )
        return SealOutcome(self.state_machine.load(tenant_id, existing.evidence_id, conn), replayed=True)

    def get_evidence(self, tenant_id: str, evidence_id: str) -> SealedEvidence:
        return self.state_machine.load(tenant_id, evidence_id)

    def verify_evidence(self, tenant_id: str, evidence_id: str) -> VerificationReport:
        """Recompute what can be recomputed and check it against the sealed record."""
        evidence = self.state_machine.load(tenant_id, evidence_id)
        checks = {
            "metadata_hash": hash_canonical_json(evidence.metadata_json) == evidence.metadata_hash,
            "signature": verify_seal(self.signing_key, evidence.seal_signature, evidence.evidence_id,
                                     evidence.payload_hash, evidence.metadata_hash, evidence.sealed_at.isoformat()),
            "retention_end": compute_retention_end(
                evidence.sealed_at, evidence.metadata_json["retention_policy"],
                evidence.metadata_json.get("retention_custom_days"),
            ) == evidence.retention_end,
        }

        draft = self.drafts.get(tenant_id, evidence.draft_id)
        if evidence.leaf_hashes:
            checks["payload_hash"] = merkle_root(evidence.leaf_hashes) == evidence.payload_hash
            attachments = self.attachments.list_for_draft(tenant_id, evidence.draft_id)
            checks["attachment_content"] = all(
                a.storage_ref is not None
                and self.blobs.exists(tenant_id, a.storage_ref)
                and hash_bytes(self.blobs.get(tenant_id, a.storage_ref)) == a.content_hash
                for a in attachments
            )
        elif draft is not None and draft.payload is not None:
            checks["payload_hash"] = hash_canonical_json(draft.payload) == evidence.payload_hash
        else:
            checks["payload_hash"] = False

        report = VerificationReport(evidence_id, checks)
        logger.log_operation("evidence.verify", "valid" if report.valid else "invalid",
                             {"tenant_id": tenant_id, "evidence_id": evidence_id, "checks": checks})
        return report
