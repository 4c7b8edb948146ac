"""
Request and response models for the evidence kernel API.

Declaration enums are accepted as plain strings so the kernel, not the
request parser, reports (and audits) unsupported values as field errors.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict


class DraftDeclaration(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tenant_id: Optional[str] = None
    ingestion_method: Optional[str] = None
    source_system: Optional[str] = None
    dataset_type: Optional[str] = None
    declared_scope: Optional[str] = None
    scope_target_id: Optional[str] = None
    rationale: Optional[str] = None
    purpose_tags: Optional[List[str]] = None
    retention_policy: Optional[str] = None
    retention_custom_days: Optional[int] = None
    contains_personal_data: bool = False
    legal_basis: Optional[str] = None
    quarantine_reason: Optional[str] = None
    resolution_due_date: Optional[str] = None
    external_reference_id: Optional[str] = None
    snapshot_timestamp: Optional[str] = None
    connector_reference: Optional[str] = None
    export_job_id: Optional[str] = None
    supplier_portal_request_id: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None

    # Present only so that client-supplied hashes can be refused explicitly
    payload_hash: Optional[str] = None
    metadata_hash: Optional[str] = None
    content_hash: Optional[str] = None


class DraftPatch(BaseModel):
    """Mutable draft fields. Binding fields are accepted here only to be rejected by the kernel."""

    model_config = ConfigDict(extra="forbid")

    tenant_id: Optional[str] = None
    ingestion_method: Optional[str] = None
    dataset_type: Optional[str] = None
    declared_scope: Optional[str] = None
    scope_target_id: Optional[str] = None
    source_system: Optional[str] = None
    rationale: Optional[str] = None
    purpose_tags: Optional[List[str]] = None
    retention_policy: Optional[str] = None
    retention_custom_days: Optional[int] = None
    contains_personal_data: Optional[bool] = None
    legal_basis: Optional[str] = None
    quarantine_reason: Optional[str] = None
    resolution_due_date: Optional[str] = None
    external_reference_id: Optional[str] = None
    snapshot_timestamp: Optional[str] = None
    connector_reference: Optional[str] = None
    export_job_id: Optional[str] = None
    supplier_portal_request_id: Optional[str] = None
    payload_hash: Optional[str] = None
    metadata_hash: Optional[str] = None
    content_hash: Optional[str] = None


class PayloadRequest(BaseModel):
    payload: Any


class AttachmentRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    filename: str
    declared_size: int
    declared_content_type: str
    content_hash: Optional[str] = None


class TransitionRequest(BaseModel):
    to_state: str
    reason: str
    from_state: Optional[str] = None
    flow: str = "ledger"


class HealthResponse(BaseModel):
    status: str
    version: str
    db_health: bool


class DraftCreatedResponse(BaseModel):
    draft_id: str
    status: str
    binding_context: Dict[str, Any]
    correlation_id: str


class PayloadResponse(BaseModel):
    draft_id: str
    payload_hash: str
    correlation_id: str


class FieldErrorModel(BaseModel):
    field: str
    code: str
    message: str


class ErrorResponse(BaseModel):
    error_code: str
    message: str
    correlation_id: Optional[str] = None
    field_errors: Optional[List[FieldErrorModel]] = None
