"""
Draft service: create, read and amend drafts, attach payloads and files, and
report seal readiness. All writes are tenant scoped and audited.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from util.logging import logger

from . import audit as events
from . import config
from .audit import AuditTrail
from .blobs import IBlobStore
from .dao import AttachmentRepository, DraftRepository, IngestionProfileRepository
from .db import transaction
from .errors import (
    BindingFieldsImmutableError,
    FieldValidationError,
    ImmutableConflictError,
    IngestionNotPermittedError,
    NotFoundError,
)
from .hashing import hash_bytes, hash_canonical_json
from .schema import (
    Attachment,
    BINDING_FIELDS,
    DatasetType,
    DeclaredScope,
    Draft,
    DraftStatus,
    FieldError,
    IngestionMethod,
    LegalBasis,
    MUTABLE_FIELDS,
    NON_NULLABLE_FIELDS,
    RetentionPolicy,
    SERVER_COMPUTED_FIELDS,
)
from .tenancy import assert_same_tenant
from .validation import (
    METHODS_DISALLOWING_FILES,
    as_date,
    check_seal_preconditions,
    draft_declaration,
    resolve_source_system,
    validate_declaration,
    validate_payload,
)


@dataclass
class ForSealView:
    draft_id: str
    status: str
    metadata: Dict[str, Any]
    files: List[Dict[str, Any]]
    ready_to_seal: bool
    missing_fields: List[str] = field(default_factory=list)
    field_errors: List[FieldError] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "draft_id": self.draft_id,
            "status": self.status,
            "metadata": self.metadata,
            "files": self.files,
            "validation": {
                "ready_to_seal": self.ready_to_seal,
                "missing_fields": self.missing_fields,
                "field_errors": [e.to_dict() for e in self.field_errors],
            },
        }


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "" or isinstance(value, datetime):
        return value or None
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class DraftService:
    """Tenant-scoped draft lifecycle up to the point of sealing."""

    def __init__(self, drafts: DraftRepository, attachments: AttachmentRepository,
                 profiles: IngestionProfileRepository, blobs: IBlobStore, audit: AuditTrail,
                 clock, ids, db_path: Optional[str] = None):
        self.drafts = drafts
        self.attachments = attachments
        self.profiles = profiles
        self.blobs = blobs
        self.audit = audit
        self.clock = clock
        self.ids = ids
        self.db_path = db_path

    def check_ingestion_profile(self, tenant_id: str, dataset_type) -> None:
        """Refuse ingestion when enforcement is on and no ACTIVE profile covers the dataset type."""
        if not config.is_profile_enforcement_enabled():
            return
        try:
            dataset_type = DatasetType(dataset_type)
        except ValueError:
            return  # reported as a field error by validation
        if self.profiles.get_active(tenant_id, dataset_type, self.clock.now()) is None:
            raise IngestionNotPermittedError(
                f"No active ingestion profile for {dataset_type.value}", dataset_type=dataset_type.value)

    def create_draft(self, tenant_id: str, actor: str, declaration: Mapping[str, Any],
                     correlation_id: str) -> Draft:
        """Validate a declaration and store it as a new DRAFT."""
        with self.audit.rejections(tenant_id, correlation_id, events.DRAFT_CREATE_REJECTED, "-", actor):
            assert_same_tenant(tenant_id, declaration.get("tenant_id"))
            self.check_ingestion_profile(tenant_id, declaration.get("dataset_type"))

            now = self.clock.now()
            errors = validate_declaration(declaration, now)
            try:
                snapshot = _parse_datetime(declaration.get("snapshot_timestamp"))
            except ValueError:
                errors.append(FieldError("snapshot_timestamp", "INVALID_VALUE",
                                         "snapshot_timestamp must be an ISO-8601 timestamp"))
            if errors:
                raise FieldValidationError(errors)

            method = IngestionMethod(declaration["ingestion_method"])
            draft = Draft(
                draft_id=self.ids.new_id("draft"),
                tenant_id=tenant_id,
                ingestion_method=method,
                source_system=resolve_source_system(method, declaration.get("source_system")),
                dataset_type=DatasetType(declaration["dataset_type"]),
                declared_scope=DeclaredScope(declaration["declared_scope"]),
                scope_target_id=declaration.get("scope_target_id") or None,
                rationale=declaration["rationale"].strip(),
                purpose_tags=sorted({t.strip() for t in declaration["purpose_tags"]}),
                retention_policy=RetentionPolicy(declaration["retention_policy"]),
                retention_custom_days=declaration.get("retention_custom_days"),
                contains_personal_data=bool(declaration.get("contains_personal_data")),
                legal_basis=LegalBasis(declaration["legal_basis"]) if declaration.get("legal_basis") else None,
                quarantine_reason=declaration.get("quarantine_reason") or None,
                resolution_due_date=as_date(declaration.get("resolution_due_date")),
                external_reference_id=declaration.get("external_reference_id") or None,
                snapshot_timestamp=snapshot,
                connector_reference=declaration.get("connector_reference") or None,
                export_job_id=declaration.get("export_job_id") or None,
                supplier_portal_request_id=declaration.get("supplier_portal_request_id") or None,
                payload=declaration.get("payload"),
                status=DraftStatus.DRAFT,
                created_by=actor,
                created_at=now,
                updated_at=now,
            )

            with transaction(self.db_path) as conn:
                self.drafts.insert(draft, conn)
                self.audit.log(tenant_id, correlation_id, events.DRAFT_CREATED, draft.draft_id, actor,
                               draft.binding_context(), conn=conn)

        logger.log_draft_operation("create", tenant_id, draft.draft_id, details=draft.binding_context())
        return draft

    def get_draft(self, tenant_id: str, draft_id: str) -> Draft:
        draft = self.drafts.get(tenant_id, draft_id)
        if draft is None:
            raise NotFoundError(f"Draft {draft_id} not found")
        return draft

    def update_mutable_fields(self, tenant_id: str, actor: str, draft_id: str, patch: Mapping[str, Any],
                              correlation_id: str) -> Draft:
        """Amend non-binding fields of an unsealed draft; the merged draft is re-validated."""
        with self.audit.rejections(tenant_id, correlation_id, events.DRAFT_UPDATE_REJECTED, draft_id, actor):
            patch = dict(patch)
            assert_same_tenant(tenant_id, patch.pop("tenant_id", None))
            draft = self.get_draft(tenant_id, draft_id)

            binding = sorted(f for f in BINDING_FIELDS if f in patch)
            if binding:
                raise BindingFieldsImmutableError(binding)
            if draft.is_sealed:
                raise ImmutableConflictError(f"Draft {draft_id} is already {draft.status.value}")

            errors = [FieldError(f, "CLIENT_HASH_REJECTED", f"{f} is computed by the server")
                      for f in SERVER_COMPUTED_FIELDS if f in patch]
            errors += [FieldError(f, "UNKNOWN_FIELD", f"{f} cannot be updated")
                       for f in sorted(patch) if f not in MUTABLE_FIELDS and f not in SERVER_COMPUTED_FIELDS]
            errors += [FieldError(f, "INVALID_VALUE", f"{f} cannot be null")
                       for f in NON_NULLABLE_FIELDS if f in patch and patch[f] is None]
            if errors:
                raise FieldValidationError(errors)

            merged = draft_declaration(draft)
            merged.update(patch)
            now = self.clock.now()
            errors = validate_declaration(merged, now, created_at=draft.created_at)
            if "snapshot_timestamp" in patch:
                try:
                    patch["snapshot_timestamp"] = _parse_datetime(patch["snapshot_timestamp"])
                except ValueError:
                    errors.append(FieldError("snapshot_timestamp", "INVALID_VALUE",
                                             "snapshot_timestamp must be an ISO-8601 timestamp"))
            if errors:
                raise FieldValidationError(errors)

            if "source_system" in patch:
                patch["source_system"] = resolve_source_system(draft.ingestion_method, patch["source_system"])
            if "resolution_due_date" in patch:
                patch["resolution_due_date"] = as_date(patch["resolution_due_date"])
            if "purpose_tags" in patch:
                patch["purpose_tags"] = sorted({t.strip() for t in patch["purpose_tags"]})

            with transaction(self.db_path) as conn:
                if self.drafts.update_fields(tenant_id, draft_id, patch, now, conn) != 1:
                    raise NotFoundError(f"Draft {draft_id} not found")
                self.audit.log(tenant_id, correlation_id, events.DRAFT_UPDATED, draft_id, actor,
                               {"fields": sorted(patch)}, conn=conn)

        logger.log_draft_operation("update", tenant_id, draft_id, details={"fields": sorted(patch)})
        return self.get_draft(tenant_id, draft_id)

    def attach_payload(self, tenant_id: str, actor: str, draft_id: str, payload: Any,
                       correlation_id: str) -> Tuple[Draft, str]:
        """Store a validated JSON object on the draft and return its canonical hash."""
        with self.audit.rejections(tenant_id, correlation_id, events.PAYLOAD_REJECTED, draft_id, actor):
            draft = self._open_draft(tenant_id, draft_id)

            if draft.ingestion_method == IngestionMethod.FILE_UPLOAD:
                raise FieldValidationError([FieldError(
                    "payload", "METHOD_DISALLOWS_PAYLOAD", "FILE_UPLOAD evidence is hashed from its attachments")])
            errors = validate_payload(payload, draft.ingestion_method)
            if errors:
                raise FieldValidationError(errors)

            payload_hash = hash_canonical_json(payload)
            with transaction(self.db_path) as conn:
                self.drafts.update_fields(tenant_id, draft_id, {"payload": payload}, self.clock.now(), conn)
                self.audit.log(tenant_id, correlation_id, events.PAYLOAD_ATTACHED, draft_id, actor,
                               {"payload_hash": payload_hash}, conn=conn)

        logger.log_draft_operation("attach_payload", tenant_id, draft_id, details={"payload_hash": payload_hash})
        return self.get_draft(tenant_id, draft_id), payload_hash

    def register_attachment(self, tenant_id: str, actor: str, draft_id: str, filename: str, declared_size: int,
                            declared_content_type: str, correlation_id: str,
                            content_hash: Optional[str] = None) -> Attachment:
        """Record attachment metadata. The hash stays empty until the bytes arrive."""
        with self.audit.rejections(tenant_id, correlation_id, events.ATTACHMENT_REJECTED, draft_id, actor):
            draft = self._open_draft(tenant_id, draft_id)

            errors = []
            if draft.ingestion_method in METHODS_DISALLOWING_FILES:
                errors.append(FieldError("attachments", "METHOD_DISALLOWS_FILE",
                                         f"{draft.ingestion_method.value} does not accept files"))
            if not filename or not filename.strip():
                errors.append(FieldError("filename", "REQUIRED", "filename is required"))
            if not isinstance(declared_size, int) or declared_size < 1:
                errors.append(FieldError("declared_size", "INVALID_VALUE", "declared_size must be a positive integer"))
            if not declared_content_type or not declared_content_type.strip():
                errors.append(FieldError("declared_content_type", "REQUIRED", "declared_content_type is required"))
            if content_hash is not None:
                errors.append(FieldError("content_hash", "CLIENT_HASH_REJECTED", "content_hash is computed by the server"))
            if errors:
                raise FieldValidationError(errors)

            attachment = Attachment(
                attachment_id=self.ids.new_id("att"),
                draft_id=draft_id,
                tenant_id=tenant_id,
                filename=filename.strip(),
                declared_size=declared_size,
                declared_content_type=declared_content_type.strip(),
                created_at=self.clock.now(),
            )
            with transaction(self.db_path) as conn:
                self.attachments.insert(attachment, conn)
                self.audit.log(tenant_id, correlation_id, events.ATTACHMENT_REGISTERED, draft_id, actor,
                               {"attachment_id": attachment.attachment_id, "filename": attachment.filename,
                                "declared_size": declared_size}, conn=conn)

        logger.log_draft_operation("register_attachment", tenant_id, draft_id,
                                   details={"attachment_id": attachment.attachment_id})
        return attachment

    def upload_attachment_content(self, tenant_id: str, actor: str, draft_id: str, attachment_id: str,
                                  content: bytes, correlation_id: str) -> Attachment:
        """Hash the bytes on the server, store them, and record the hash once."""
        with self.audit.rejections(tenant_id, correlation_id, events.ATTACHMENT_REJECTED, draft_id, actor):
            self._open_draft(tenant_id, draft_id)
            attachment = self.attachments.get(tenant_id, draft_id, attachment_id)
            if attachment is None:
                raise NotFoundError(f"Attachment {attachment_id} not found")
            if attachment.content_hash:
                raise ImmutableConflictError(f"Attachment {attachment_id} already has content")
            if len(content) != attachment.declared_size:
                raise FieldValidationError([FieldError(
                    "content", "SIZE_MISMATCH",
                    f"received {len(content)} bytes, declared {attachment.declared_size}")])

            content_hash = hash_bytes(content)
            storage_ref = self.blobs.put(tenant_id, content)
            with transaction(self.db_path) as conn:
                if not self.attachments.set_content(tenant_id, attachment_id, content_hash, storage_ref, conn):
                    raise ImmutableConflictError(f"Attachment {attachment_id} already has content")
                self.audit.log(tenant_id, correlation_id, events.ATTACHMENT_UPLOADED, draft_id, actor,
                               {"attachment_id": attachment_id, "content_hash": content_hash}, conn=conn)

        logger.log_draft_operation("upload_attachment", tenant_id, draft_id,
                                   details={"attachment_id": attachment_id, "content_hash": content_hash[:16]})
        return self.attachments.get(tenant_id, draft_id, attachment_id)

    def list_attachments(self, tenant_id: str, draft_id: str) -> List[Attachment]:
        self.get_draft(tenant_id, draft_id)
        return self.attachments.list_for_draft(tenant_id, draft_id)

    def readiness(self, draft: Draft, attachments: List[Attachment]) -> List[FieldError]:
        """Everything that would stop this draft from sealing right now."""
        errors = validate_declaration(draft_declaration(draft), self.clock.now(), created_at=draft.created_at)
        return errors + check_seal_preconditions(draft, attachments)

    def prepare_for_seal(self, tenant_id: str, draft_id: str) -> ForSealView:
        """Read-only view of what will be sealed and whether it can be."""
        draft = self.get_draft(tenant_id, draft_id)
        attachments = self.attachments.list_for_draft(tenant_id, draft_id)

        errors = self.readiness(draft, attachments)
        if draft.is_sealed:
            errors = [FieldError("status", "SEALED_IMMUTABLE", f"Draft is already {draft.status.value}")]

        metadata = draft.to_dict()
        metadata.pop("payload", None)
        metadata["binding_context"] = draft.binding_context()
        metadata["has_payload"] = draft.payload is not None

        return ForSealView(
            draft_id=draft_id,
            status=draft.status.value,
            metadata=metadata,
            files=[a.to_dict() for a in attachments],
            ready_to_seal=not errors,
            missing_fields=sorted({e.code for e in errors}),
            field_errors=errors,
        )

    def _open_draft(self, tenant_id: str, draft_id: str) -> Draft:
        draft = self.get_draft(tenant_id, draft_id)
        if draft.is_sealed:
            raise ImmutableConflictError(f"Draft {draft_id} is already {draft.status.value}")
        return draft
