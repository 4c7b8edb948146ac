"""
Kernel record types: drafts, attachments, sealed evidence, audit events, state history.
"""

from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class IngestionMethod(str, Enum):
    MANUAL_ENTRY = "MANUAL_ENTRY"
    FILE_UPLOAD = "FILE_UPLOAD"
    ERP_EXPORT = "ERP_EXPORT"
    ERP_API = "ERP_API"
    API_PUSH = "API_PUSH"
    SUPPLIER_PORTAL = "SUPPLIER_PORTAL"


class DatasetType(str, Enum):
    SUPPLIER_MASTER = "SUPPLIER_MASTER"
    PRODUCT_MASTER = "PRODUCT_MASTER"
    BOM = "BOM"
    EMISSIONS_DATA = "EMISSIONS_DATA"
    TRANSACTION = "TRANSACTION"
    OTHER = "OTHER"


class DeclaredScope(str, Enum):
    ENTIRE_ORGANIZATION = "ENTIRE_ORGANIZATION"
    LEGAL_ENTITY = "LEGAL_ENTITY"
    SITE = "SITE"
    PRODUCT_FAMILY = "PRODUCT_FAMILY"
    UNKNOWN = "UNKNOWN"


class SourceSystem(str, Enum):
    SAP = "SAP"
    MICROSOFT_DYNAMICS = "MICROSOFT_DYNAMICS"
    ORACLE = "ORACLE"
    ODOO = "ODOO"
    NETSUITE = "NETSUITE"
    SUPPLIER_PORTAL = "SUPPLIER_PORTAL"
    INTERNAL_MANUAL = "INTERNAL_MANUAL"
    CLIENT_SYSTEM = "CLIENT_SYSTEM"
    OTHER = "OTHER"


class RetentionPolicy(str, Enum):
    SIX_MONTHS = "6_MONTHS"
    STANDARD_1_YEAR = "STANDARD_1_YEAR"
    THREE_YEARS = "3_YEARS"
    SEVEN_YEARS = "7_YEARS"
    TEN_YEARS = "10_YEARS"
    CUSTOM = "CUSTOM"


class LegalBasis(str, Enum):
    CONSENT = "CONSENT"
    CONTRACT = "CONTRACT"
    LEGAL_OBLIGATION = "LEGAL_OBLIGATION"
    VITAL_INTERESTS = "VITAL_INTERESTS"
    PUBLIC_TASK = "PUBLIC_TASK"
    LEGITIMATE_INTERESTS = "LEGITIMATE_INTERESTS"


class DraftStatus(str, Enum):
    DRAFT = "DRAFT"
    SEALED = "SEALED"
    QUARANTINED = "QUARANTINED"


class LedgerState(str, Enum):
    DRAFT = "DRAFT"
    SEALED = "SEALED"
    QUARANTINED = "QUARANTINED"
    REJECTED = "REJECTED"


class ClassificationState(str, Enum):
    RAW = "RAW"
    CLASSIFIED = "CLASSIFIED"
    STRUCTURED = "STRUCTURED"
    REJECTED = "REJECTED"


class TrustLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class ReviewStatus(str, Enum):
    PENDING_REVIEW = "PENDING_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class AuditOutcome(str, Enum):
    SUCCESS = "SUCCESS"
    REJECTED = "REJECTED"


# Fixed at creation; any later attempt to change them fails
BINDING_FIELDS = ("ingestion_method", "dataset_type", "declared_scope", "scope_target_id")

MUTABLE_FIELDS = (
    "source_system",
    "rationale",
    "purpose_tags",
    "retention_policy",
    "retention_custom_days",
    "contains_personal_data",
    "legal_basis",
    "quarantine_reason",
    "resolution_due_date",
    "external_reference_id",
    "snapshot_timestamp",
    "connector_reference",
    "export_job_id",
    "supplier_portal_request_id",
)

# Mutable fields backed by NOT NULL columns
NON_NULLABLE_FIELDS = ("source_system", "rationale", "purpose_tags", "retention_policy", "contains_personal_data")

# Never accepted from a caller
SERVER_COMPUTED_FIELDS = ("payload_hash", "metadata_hash", "content_hash")


def _jsonable(data: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for k, v in data.items():
        if isinstance(v, Enum):
            out[k] = v.value
        elif isinstance(v, (datetime, date)):
            out[k] = v.isoformat()
        elif isinstance(v, list):
            out[k] = [_jsonable(i) if isinstance(i, dict) else i for i in v]
        else:
            out[k] = v
    return out


@dataclass
class FieldError:
    field: str
    code: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"field": self.field, "code": self.code, "message": self.message}


@dataclass
class CompatibilityResult:
    allowed: bool
    reason: Optional[str] = None


@dataclass
class Draft:
    draft_id: str
    tenant_id: str
    ingestion_method: IngestionMethod
    source_system: SourceSystem
    dataset_type: DatasetType
    declared_scope: DeclaredScope
    scope_target_id: Optional[str]
    rationale: str
    purpose_tags: List[str]
    retention_policy: RetentionPolicy
    created_by: str
    created_at: datetime
    updated_at: datetime
    status: DraftStatus = DraftStatus.DRAFT
    retention_custom_days: Optional[int] = None
    contains_personal_data: bool = False
    legal_basis: Optional[LegalBasis] = None
    quarantine_reason: Optional[str] = None
    resolution_due_date: Optional[date] = None
    external_reference_id: Optional[str] = None
    snapshot_timestamp: Optional[datetime] = None
    connector_reference: Optional[str] = None
    export_job_id: Optional[str] = None
    supplier_portal_request_id: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None

    @property
    def is_sealed(self) -> bool:
        return self.status != DraftStatus.DRAFT

    def binding_context(self) -> Dict[str, Any]:
        return {
            "ingestion_method": self.ingestion_method.value,
            "dataset_type": self.dataset_type.value,
            "declared_scope": self.declared_scope.value,
            "scope_target_id": self.scope_target_id,
            "link_status": "QUARANTINED" if self.declared_scope == DeclaredScope.UNKNOWN else "LINKED",
        }

    def to_dict(self) -> Dict[str, Any]:
        return _jsonable(asdict(self))


@dataclass
class Attachment:
    attachment_id: str
    draft_id: str
    tenant_id: str
    filename: str
    declared_size: int
    declared_content_type: str
    created_at: datetime
    content_hash: Optional[str] = None
    storage_ref: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _jsonable(asdict(self))


@dataclass
class StateTransition:
    evidence_id: str
    tenant_id: str
    flow: str
    sequence: int
    from_state: Optional[str]
    to_state: str
    reason: str
    actor: str
    transitioned_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return _jsonable(asdict(self))


@dataclass
class SealedEvidence:
    evidence_id: str
    draft_id: str
    tenant_id: str
    ingestion_method: IngestionMethod
    dataset_type: DatasetType
    declared_scope: DeclaredScope
    ledger_state: LedgerState
    payload_hash: str
    metadata_hash: str
    metadata_json: Dict[str, Any]
    sealed_at: datetime
    retention_end: datetime
    trust_level: TrustLevel
    review_status: ReviewStatus
    seal_signature: str
    sealed_by: str
    external_reference_id: Optional[str] = None
    leaf_hashes: List[str] = field(default_factory=list)
    state_history: List[StateTransition] = field(default_factory=list)

    def current_state(self, flow: str = "ledger") -> str:
        """Latest state in a flow, derived from the append-only history."""
        entries = [t for t in self.state_history if t.flow == flow]
        if not entries:
            return self.ledger_state.value if flow == "ledger" else ClassificationState.RAW.value
        return max(entries, key=lambda t: t.sequence).to_state

    def to_dict(self) -> Dict[str, Any]:
        data = _jsonable(asdict(self))
        data["state_history"] = [t.to_dict() for t in self.state_history]
        data["current_state"] = self.current_state("ledger")
        data["classification_state"] = self.current_state("classification")
        return data


@dataclass
class AuditEvent:
    event_id: str
    tenant_id: str
    correlation_id: str
    event_type: str
    subject_id: str
    actor: str
    created_at: datetime
    outcome: AuditOutcome
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return _jsonable(asdict(self))


@dataclass
class IngestionProfile:
    profile_id: str
    tenant_id: str
    dataset_type: DatasetType
    entity_type: str
    ingestion_path: str
    authority_type: str
    status: str  # ACTIVE | EXPIRED
    expires_at: Optional[datetime] = None

    def is_active(self, now: datetime) -> bool:
        if self.status != "ACTIVE":
            return False
        return self.expires_at is None or self.expires_at > now
