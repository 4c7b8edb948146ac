"""
Validation matrix engine.
Static compatibility tables plus pure checks over declarations and drafts. No I/O.
"""

import calendar
import re
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Type

from . import config
from .schema import (
    Attachment,
    CompatibilityResult,
    DatasetType,
    DeclaredScope,
    Draft,
    FieldError,
    IngestionMethod,
    LegalBasis,
    RetentionPolicy,
    SERVER_COMPUTED_FIELDS,
    SourceSystem,
    TrustLevel,
)

M = IngestionMethod
D = DatasetType
S = DeclaredScope

METHOD_DATASETS = {
    M.MANUAL_ENTRY: {D.SUPPLIER_MASTER, D.PRODUCT_MASTER, D.BOM, D.EMISSIONS_DATA, D.OTHER},
    M.FILE_UPLOAD: set(D),
    M.ERP_EXPORT: {D.SUPPLIER_MASTER, D.PRODUCT_MASTER, D.BOM, D.TRANSACTION},
    M.ERP_API: {D.SUPPLIER_MASTER, D.PRODUCT_MASTER, D.BOM, D.TRANSACTION},
    M.API_PUSH: {D.SUPPLIER_MASTER, D.PRODUCT_MASTER, D.BOM, D.EMISSIONS_DATA, D.TRANSACTION},
    M.SUPPLIER_PORTAL: {D.EMISSIONS_DATA, D.OTHER},
}

DATASET_SCOPES = {
    D.SUPPLIER_MASTER: {S.ENTIRE_ORGANIZATION, S.LEGAL_ENTITY, S.UNKNOWN},
    D.PRODUCT_MASTER: {S.ENTIRE_ORGANIZATION, S.LEGAL_ENTITY, S.PRODUCT_FAMILY, S.UNKNOWN},
    D.BOM: {S.LEGAL_ENTITY, S.SITE, S.PRODUCT_FAMILY, S.UNKNOWN},
    D.EMISSIONS_DATA: {S.ENTIRE_ORGANIZATION, S.LEGAL_ENTITY, S.SITE, S.UNKNOWN},
    D.TRANSACTION: {S.ENTIRE_ORGANIZATION, S.LEGAL_ENTITY, S.SITE, S.UNKNOWN},
    D.OTHER: set(S),
}

SCOPES_REQUIRING_TARGET = {S.LEGAL_ENTITY, S.SITE, S.PRODUCT_FAMILY}

_ERP_SYSTEMS = {
    SourceSystem.SAP,
    SourceSystem.MICROSOFT_DYNAMICS,
    SourceSystem.ODOO,
    SourceSystem.ORACLE,
    SourceSystem.NETSUITE,
}

# Either a forced value (server overrides the caller) or an allowed set
FORCED_SOURCE_SYSTEM = {
    M.MANUAL_ENTRY: SourceSystem.INTERNAL_MANUAL,
    M.SUPPLIER_PORTAL: SourceSystem.SUPPLIER_PORTAL,
}

ALLOWED_SOURCE_SYSTEMS = {
    M.FILE_UPLOAD: _ERP_SYSTEMS | {SourceSystem.OTHER, SourceSystem.CLIENT_SYSTEM},
    M.API_PUSH: _ERP_SYSTEMS | {SourceSystem.OTHER, SourceSystem.CLIENT_SYSTEM},
    M.ERP_EXPORT: _ERP_SYSTEMS | {SourceSystem.OTHER},
    M.ERP_API: set(_ERP_SYSTEMS),
}

METHODS_DISALLOWING_FILES = {M.MANUAL_ENTRY, M.ERP_API, M.API_PUSH}

# Seal preconditions per method. "payload_or_file" is satisfied by either
# a stored payload or at least one attachment.
METHOD_REQUIREMENTS = {
    M.MANUAL_ENTRY: {"fields": [], "content": "payload"},
    M.FILE_UPLOAD: {"fields": [], "content": "file"},
    M.ERP_EXPORT: {"fields": ["snapshot_timestamp"], "content": "payload_or_file"},
    M.ERP_API: {"fields": ["snapshot_timestamp", "connector_reference"], "content": "payload"},
    M.API_PUSH: {"fields": ["external_reference_id"], "content": "payload"},
    M.SUPPLIER_PORTAL: {"fields": ["supplier_portal_request_id"], "content": "payload_or_file"},
}

TRUST_LEVELS = {
    M.MANUAL_ENTRY: TrustLevel.LOW,
    M.FILE_UPLOAD: TrustLevel.MEDIUM,
    M.ERP_EXPORT: TrustLevel.MEDIUM,
    M.SUPPLIER_PORTAL: TrustLevel.MEDIUM,
    M.ERP_API: TrustLevel.HIGH,
    M.API_PUSH: TrustLevel.HIGH,
}

# Calendar offsets as (years, months)
RETENTION_PERIODS = {
    RetentionPolicy.SIX_MONTHS: (0, 6),
    RetentionPolicy.STANDARD_1_YEAR: (1, 0),
    RetentionPolicy.THREE_YEARS: (3, 0),
    RetentionPolicy.SEVEN_YEARS: (7, 0),
    RetentionPolicy.TEN_YEARS: (10, 0),
}

PLACEHOLDER_VALUES = {"test", "asdf", "xxx", "-", "n/a", "na", "tbd", "todo", "none", "null", "placeholder"}
_LOREM = re.compile(r"^\s*lorem ipsum", re.IGNORECASE)
_REPEATED_CHAR = re.compile(r"^(.)\1*$", re.DOTALL)


def check_compatibility(method, dataset_type, scope) -> CompatibilityResult:
    """Is (method, dataset_type, scope) a legal combination?"""
    method, dataset_type, scope = M(method), D(dataset_type), S(scope)

    if dataset_type not in METHOD_DATASETS[method]:
        return CompatibilityResult(
            allowed=False,
            reason=f"{method.value} does not support dataset type {dataset_type.value}",
        )
    if scope not in DATASET_SCOPES[dataset_type]:
        return CompatibilityResult(
            allowed=False,
            reason=f"{dataset_type.value} does not support scope {scope.value}",
        )
    return CompatibilityResult(allowed=True)


def trust_level_for(method) -> TrustLevel:
    return TRUST_LEVELS[M(method)]


def ledger_state_for(scope) -> str:
    return "QUARANTINED" if S(scope) == S.UNKNOWN else "SEALED"


def is_placeholder(text: str) -> bool:
    stripped = text.strip()
    if not stripped:
        return True
    if stripped.lower() in PLACEHOLDER_VALUES:
        return True
    if _LOREM.match(stripped):
        return True
    return bool(_REPEATED_CHAR.match(stripped.replace(" ", "")))


def add_calendar_months(start: datetime, months: int) -> datetime:
    """Add months on the calendar, clamping to the last day of the target month."""
    total = start.month - 1 + months
    year = start.year + total // 12
    month = total % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def compute_retention_end(sealed_at: datetime, policy, custom_days: Optional[int] = None) -> datetime:
    """sealed_at plus the retention period, in calendar terms."""
    policy = RetentionPolicy(policy)
    if policy == RetentionPolicy.CUSTOM:
        if not custom_days:
            raise ValueError("CUSTOM retention requires retention_custom_days")
        return sealed_at + timedelta(days=custom_days)
    years, months = RETENTION_PERIODS[policy]
    return add_calendar_months(sealed_at, years * 12 + months)


def _coerce_enum(enum_cls: Type, field: str, value: Any, errors: List[FieldError]):
    if value is None or value == "":
        errors.append(FieldError(field, "REQUIRED", f"{field} is required"))
        return None
    try:
        return enum_cls(value)
    except ValueError:
        errors.append(FieldError(field, "INVALID_VALUE", f"Unsupported {field}: {value}"))
        return None


def as_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip())


def validate_payload(payload: Any, method=None) -> List[FieldError]:
    """A payload must be a non-empty JSON object; manual entries also reject placeholder values."""
    if not isinstance(payload, dict) or not payload:
        return [FieldError("payload", "PAYLOAD_INVALID", "payload must be a non-empty JSON object")]

    errors = []
    if method is not None and M(method) == M.MANUAL_ENTRY:
        for key, value in payload.items():
            if isinstance(value, str) and value.strip().lower() in PLACEHOLDER_VALUES:
                errors.append(FieldError(
                    f"payload.{key}", "PAYLOAD_PLACEHOLDER",
                    f'Placeholder value not allowed for {key}: "{value}"',
                ))
    return errors


def validate_declaration(declaration: Mapping[str, Any], now: datetime,
                         created_at: Optional[datetime] = None) -> List[FieldError]:
    """
    Check a draft declaration and return every field error found.

    `declaration` is a plain mapping of draft fields (enum members or their values).
    The quarantine deadline is measured from `created_at`, defaulting to `now`.
    """
    errors: List[FieldError] = []

    for name in SERVER_COMPUTED_FIELDS:
        if declaration.get(name) is not None:
            errors.append(FieldError(name, "CLIENT_HASH_REJECTED", f"{name} is computed by the server"))

    method = _coerce_enum(M, "ingestion_method", declaration.get("ingestion_method"), errors)
    dataset_type = _coerce_enum(D, "dataset_type", declaration.get("dataset_type"), errors)
    scope = _coerce_enum(S, "declared_scope", declaration.get("declared_scope"), errors)

    if method and dataset_type and dataset_type not in METHOD_DATASETS[method]:
        errors.append(FieldError(
            "dataset_type", "METHOD_DATASET_INCOMPATIBLE",
            f"{method.value} does not support dataset type {dataset_type.value}",
        ))
    if dataset_type and scope and scope not in DATASET_SCOPES[dataset_type]:
        errors.append(FieldError(
            "declared_scope", "SCOPE_NOT_ALLOWED",
            f"{dataset_type.value} does not support scope {scope.value}",
        ))

    target = declaration.get("scope_target_id")
    if scope in SCOPES_REQUIRING_TARGET and not (target and str(target).strip()):
        errors.append(FieldError("scope_target_id", "SCOPE_TARGET_REQUIRED",
                                 f"scope_target_id is required for {scope.value}"))
    if scope == S.ENTIRE_ORGANIZATION and target:
        errors.append(FieldError("scope_target_id", "SCOPE_TARGET_NOT_ALLOWED",
                                 "scope_target_id must be empty for ENTIRE_ORGANIZATION"))

    errors.extend(_check_quarantine(declaration, scope, now, created_at or now))
    errors.extend(_check_rationale(declaration.get("rationale")))
    errors.extend(_check_purpose_tags(declaration.get("purpose_tags")))
    errors.extend(_check_retention(declaration))
    errors.extend(_check_personal_data(declaration))

    if method:
        errors.extend(_check_source_system(method, declaration.get("source_system")))
        if declaration.get("payload") is not None:
            errors.extend(validate_payload(declaration["payload"], method))

    return errors


def _check_quarantine(declaration, scope, now: datetime, created_at: datetime) -> List[FieldError]:
    errors = []
    reason = declaration.get("quarantine_reason")
    has_reason = bool(reason and str(reason).strip())
    try:
        due = as_date(declaration.get("resolution_due_date"))
    except ValueError:
        return [FieldError("resolution_due_date", "INVALID_VALUE", "resolution_due_date must be an ISO date")]

    if (scope == S.UNKNOWN or due is not None) and not has_reason:
        errors.append(FieldError("quarantine_reason", "QUARANTINE_REASON_REQUIRED",
                                 "quarantine_reason is required with an UNKNOWN scope or a resolution date"))
    if (scope == S.UNKNOWN or has_reason) and due is None:
        errors.append(FieldError("resolution_due_date", "RESOLUTION_DUE_DATE_REQUIRED",
                                 "resolution_due_date is required with an UNKNOWN scope or a quarantine reason"))

    if due is not None:
        latest = created_at.date() + timedelta(days=config.QUARANTINE_MAX_DAYS)
        if due <= now.date():
            errors.append(FieldError("resolution_due_date", "RESOLUTION_DUE_DATE_IN_PAST",
                                     "resolution_due_date must be after today"))
        elif due > latest:
            errors.append(FieldError(
                "resolution_due_date", "RESOLUTION_DUE_DATE_TOO_FAR",
                f"resolution_due_date must be within {config.QUARANTINE_MAX_DAYS} days of creation ({latest.isoformat()})",
            ))
    return errors


def _check_rationale(rationale: Optional[str]) -> List[FieldError]:
    if rationale is None or not str(rationale).strip():
        return [FieldError("rationale", "REQUIRED", "rationale is required")]
    text = str(rationale).strip()
    if is_placeholder(text):
        return [FieldError("rationale", "RATIONALE_PLACEHOLDER", "rationale must not be placeholder text")]
    if len(text) < config.RATIONALE_MIN_LENGTH:
        return [FieldError("rationale", "RATIONALE_TOO_SHORT",
                           f"rationale must be at least {config.RATIONALE_MIN_LENGTH} characters")]
    return []


def _check_purpose_tags(tags: Optional[Iterable[str]]) -> List[FieldError]:
    tags = list(tags or [])
    if not tags:
        return [FieldError("purpose_tags", "PURPOSE_TAGS_REQUIRED", "at least one purpose tag is required")]
    if any(not isinstance(t, str) or not t.strip() for t in tags):
        return [FieldError("purpose_tags", "PURPOSE_TAG_BLANK", "purpose tags must be non-blank strings")]
    return []


def _check_retention(declaration) -> List[FieldError]:
    errors: List[FieldError] = []
    policy = _coerce_enum(RetentionPolicy, "retention_policy", declaration.get("retention_policy"), errors)
    days = declaration.get("retention_custom_days")

    if policy == RetentionPolicy.CUSTOM:
        if days is None:
            errors.append(FieldError("retention_custom_days", "RETENTION_CUSTOM_DAYS_REQUIRED",
                                     "retention_custom_days is required for CUSTOM retention"))
        elif not isinstance(days, int) or isinstance(days, bool) or not 1 <= days <= config.CUSTOM_RETENTION_MAX_DAYS:
            errors.append(FieldError(
                "retention_custom_days", "RETENTION_CUSTOM_DAYS_OUT_OF_RANGE",
                f"retention_custom_days must be between 1 and {config.CUSTOM_RETENTION_MAX_DAYS}",
            ))
    elif policy is not None and days is not None:
        errors.append(FieldError("retention_custom_days", "RETENTION_CUSTOM_DAYS_NOT_ALLOWED",
                                 "retention_custom_days applies only to CUSTOM retention"))
    return errors


def _check_personal_data(declaration) -> List[FieldError]:
    errors: List[FieldError] = []
    flag = bool(declaration.get("contains_personal_data"))
    basis = declaration.get("legal_basis")

    if flag and not basis:
        errors.append(FieldError("legal_basis", "LEGAL_BASIS_REQUIRED",
                                 "legal_basis is required when contains_personal_data is true"))
    elif basis:
        if _coerce_enum(LegalBasis, "legal_basis", basis, errors) and not flag:
            errors.append(FieldError("contains_personal_data", "PERSONAL_DATA_FLAG_REQUIRED",
                                     "legal_basis requires contains_personal_data to be true"))
    return errors


def _check_source_system(method: IngestionMethod, value) -> List[FieldError]:
    if method in FORCED_SOURCE_SYSTEM:
        return []
    errors: List[FieldError] = []
    source = _coerce_enum(SourceSystem, "source_system", value, errors)
    if source and source not in ALLOWED_SOURCE_SYSTEMS[method]:
        allowed = ", ".join(sorted(s.value for s in ALLOWED_SOURCE_SYSTEMS[method]))
        errors.append(FieldError("source_system", "SOURCE_SYSTEM_NOT_ALLOWED",
                                 f"{method.value} requires source_system from: {allowed}"))
    return errors


def resolve_source_system(method, value) -> SourceSystem:
    """Server-side source system: forced for some methods, the caller's choice otherwise."""
    forced = FORCED_SOURCE_SYSTEM.get(M(method))
    return forced if forced else SourceSystem(value)


def check_seal_preconditions(draft: Draft, attachments: List[Attachment]) -> List[FieldError]:
    """Method-specific content requirements that must hold before sealing."""
    requirements = METHOD_REQUIREMENTS[draft.ingestion_method]
    errors = []

    for name in requirements["fields"]:
        if not getattr(draft, name):
            errors.append(FieldError(name, f"{name.upper()}_REQUIRED", f"{name} is required for "
                                     f"{draft.ingestion_method.value}"))

    content = requirements["content"]
    has_payload = draft.payload is not None
    unhashed = [a.attachment_id for a in attachments if not a.content_hash]

    if content == "payload" and not has_payload:
        errors.append(FieldError("payload", "PAYLOAD_REQUIRED",
                                 f"{draft.ingestion_method.value} requires a validated payload"))
    elif content == "file" and not attachments:
        errors.append(FieldError("attachments", "FILE_REQUIRED",
                                 "FILE_UPLOAD requires at least one attachment"))
    elif content == "payload_or_file" and not has_payload and not attachments:
        errors.append(FieldError("payload", "PAYLOAD_REQUIRED",
                                 f"{draft.ingestion_method.value} requires a payload or an attachment"))

    if unhashed:
        errors.append(FieldError("attachments", "FILE_HASH_MISSING",
                                 f"attachments without server-computed hash: {', '.join(unhashed)}"))
    return errors


def draft_declaration(draft: Draft) -> Dict[str, Any]:
    """The declaration view of a stored draft, for re-validation."""
    return {
        "ingestion_method": draft.ingestion_method,
        "source_system": draft.source_system,
        "dataset_type": draft.dataset_type,
        "declared_scope": draft.declared_scope,
        "scope_target_id": draft.scope_target_id,
        "rationale": draft.rationale,
        "purpose_tags": draft.purpose_tags,
        "retention_policy": draft.retention_policy,
        "retention_custom_days": draft.retention_custom_days,
        "contains_personal_data": draft.contains_personal_data,
        "legal_basis": draft.legal_basis,
        "quarantine_reason": draft.quarantine_reason,
        "resolution_due_date": draft.resolution_due_date,
        "payload": draft.payload,
    }
