"""
Idempotency guard over (tenant_id, dataset_type, external_reference_id).
The unique index on sealed_evidence is the real lock; this guard classifies what it finds.
"""

import sqlite3
from dataclasses import dataclass
from typing import Optional

from util.logging import logger

from .dao import EvidenceRepository
from .errors import IdempotencyConflictError
from .schema import DatasetType, SealedEvidence

PROCEED = "PROCEED"
REPLAY = "REPLAY"


@dataclass
class IdempotencyDecision:
    action: str
    existing: Optional[SealedEvidence] = None

    @property
    def is_replay(self) -> bool:
        return self.action == REPLAY


class IdempotencyGuard:
    """Replay detection for submissions that carry an external reference."""

    def __init__(self, evidence: EvidenceRepository):
        self.evidence = evidence

    def check(self, tenant_id: str, dataset_type: DatasetType, external_reference_id: Optional[str],
              payload_hash: str, conn: Optional[sqlite3.Connection] = None) -> IdempotencyDecision:
        """
        No key or no prior record -> PROCEED.
        Prior record with the same payload hash -> REPLAY with that record.
        Prior record with a different hash -> IdempotencyConflictError carrying both hashes.
        """
        if not external_reference_id:
            return IdempotencyDecision(PROCEED)

        dataset_value = DatasetType(dataset_type).value
        existing = self.evidence.find_by_idempotency_key(tenant_id, dataset_type, external_reference_id, conn)
        if existing is None:
            logger.log_idempotency_decision(tenant_id, dataset_value, external_reference_id, "proceed")
            return IdempotencyDecision(PROCEED)

        if existing.payload_hash == payload_hash:
            logger.log_idempotency_decision(tenant_id, dataset_value, external_reference_id, "replay",
                                            {"evidence_id": existing.evidence_id})
            return IdempotencyDecision(REPLAY, existing)

        logger.log_idempotency_decision(tenant_id, dataset_value, external_reference_id, "conflict",
                                        {"evidence_id": existing.evidence_id})
        raise IdempotencyConflictError(
            existing_evidence_id=existing.evidence_id,
            existing_payload_hash=existing.payload_hash,
            provided_payload_hash=payload_hash,
        )
