"""
Kernel container. Wires repositories and services from configuration or injected collaborators.
"""

from dataclasses import dataclass
from typing import Optional

from . import config
from .audit import AuditTrail
from .blobs import FilesystemBlobStore, IBlobStore
from .clock import SystemClock, UuidProvider
from .dao import (
    AttachmentRepository,
    AuditRepository,
    DraftRepository,
    EvidenceRepository,
    IngestionProfileRepository,
    StateHistoryRepository,
)
from .db import init_db
from .drafts import DraftService
from .idempotency import IdempotencyGuard
from .sealing import SealingService
from .state_machine import StateMachine


@dataclass
class Kernel:
    db_path: str
    audit: AuditTrail
    drafts: DraftService
    sealing: SealingService
    state_machine: StateMachine
    profiles: IngestionProfileRepository
    blobs: IBlobStore


def build_kernel(db_path: Optional[str] = None, blob_root: Optional[str] = None, clock=None, ids=None,
                 blobs: Optional[IBlobStore] = None, signing_key: Optional[bytes] = None,
                 initialize: bool = True) -> Kernel:
    """Build a kernel. Anything not passed in comes from config."""
    db_path = db_path or config.DB_PATH
    clock = clock or SystemClock()
    ids = ids or UuidProvider()
    blobs = blobs or FilesystemBlobStore(blob_root or config.BLOB_ROOT)
    signing_key = signing_key or config.get_seal_signing_key()

    if initialize:
        init_db(db_path)

    draft_repo = DraftRepository(db_path)
    attachment_repo = AttachmentRepository(db_path)
    evidence_repo = EvidenceRepository(db_path)
    history_repo = StateHistoryRepository(db_path)
    profile_repo = IngestionProfileRepository(db_path)

    audit = AuditTrail(AuditRepository(db_path), clock, ids)
    state_machine = StateMachine(evidence_repo, history_repo, audit, clock, db_path)
    draft_service = DraftService(draft_repo, attachment_repo, profile_repo, blobs, audit, clock, ids, db_path)
    sealing = SealingService(
        draft_repo, attachment_repo, evidence_repo, history_repo, draft_service,
        IdempotencyGuard(evidence_repo), state_machine, audit, blobs, clock, ids, signing_key, db_path,
    )

    return Kernel(
        db_path=db_path,
        audit=audit,
        drafts=draft_service,
        sealing=sealing,
        state_machine=state_machine,
        profiles=profile_repo,
        blobs=blobs,
    )
