"""
Kernel error taxonomy.
Each error knows its wire code and HTTP status; the API layer only renders them.
"""

from typing import Any, Dict, List, Optional


class KernelError(Exception):
    """Base class for every error the kernel reports to callers."""

    error_code = "KERNEL_ERROR"
    http_status = 500
    retryable = False

    def __init__(self, message: str = "", error_code: Optional[str] = None, **extra: Any):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if error_code:
            self.error_code = error_code
        self.extra = extra

    def to_dict(self) -> Dict[str, Any]:
        body = {"error_code": self.error_code, "message": self.message}
        if self.retryable:
            body["retryable"] = True
        body.update(self.extra)
        return body


class FieldValidationError(KernelError):
    """Malformed or missing input. Always recoverable by the caller."""

    error_code = "VALIDATION_ERROR"
    http_status = 422

    def __init__(self, field_errors: List[Any], message: str = "Validation failed"):
        self.field_errors = list(field_errors)
        # A single distinct code is promoted to the top-level error code
        codes = {e.code for e in self.field_errors}
        super().__init__(message, error_code=codes.pop() if len(codes) == 1 else None)

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["field_errors"] = [e.to_dict() for e in self.field_errors]
        return body


class NotFoundError(KernelError):
    """Missing record, or a record owned by another tenant."""

    error_code = "NOT_FOUND"
    http_status = 404


class UnauthenticatedError(KernelError):
    """Request lacks an actor, a tenant, or a valid bearer token."""

    error_code = "UNAUTHENTICATED"
    http_status = 401


class TenantContextMissing(KernelError):
    """A repository was called without a tenant. Programming error, never a valid path."""

    error_code = "TENANT_CONTEXT_MISSING"
    http_status = 500


class TenantIsolationError(KernelError):
    """Request explicitly referenced another tenant."""

    error_code = "FORBIDDEN"
    http_status = 403


class IngestionNotPermittedError(KernelError):
    """No ACTIVE ingestion profile for this tenant and dataset type."""

    error_code = "INGESTION_NOT_PERMITTED"
    http_status = 403


class IdempotencyConflictError(KernelError):
    """Same idempotency key, different payload."""

    error_code = "IDEMPOTENCY_CONFLICT"
    http_status = 409

    def __init__(self, existing_evidence_id: str, existing_payload_hash: str, provided_payload_hash: str):
        super().__init__(
            "Same external_reference_id but different payload",
            existing_evidence_id=existing_evidence_id,
            existing_payload_hash=existing_payload_hash,
            provided_payload_hash=provided_payload_hash,
        )
        self.existing_evidence_id = existing_evidence_id
        self.existing_payload_hash = existing_payload_hash
        self.provided_payload_hash = provided_payload_hash


class ImmutableConflictError(KernelError):
    """Attempt to mutate a sealed or terminal record."""

    error_code = "SEALED_IMMUTABLE"
    http_status = 409


class BindingFieldsImmutableError(KernelError):
    """Attempt to change method, dataset type or scope after creation."""

    error_code = "BINDING_FIELDS_IMMUTABLE"
    http_status = 422

    def __init__(self, fields: List[str]):
        super().__init__(f"Binding fields cannot be changed: {', '.join(fields)}", fields=fields)
        self.fields = fields


class InvalidTransitionError(KernelError):
    """State transition not in the allowed table."""

    error_code = "INVALID_TRANSITION"
    http_status = 400

    def __init__(self, message: str, current_state: str, attempted_state: str, allowed_transitions: List[str]):
        super().__init__(
            message,
            current_state=current_state,
            attempted_state=attempted_state,
            allowed_transitions=allowed_transitions,
        )
        self.current_state = current_state
        self.attempted_state = attempted_state
        self.allowed_transitions = allowed_transitions


class StorageTimeoutError(KernelError):
    """Storage did not answer in time. Retryable."""

    error_code = "STORAGE_TIMEOUT"
    http_status = 503
    retryable = True


class AuditWriteError(KernelError):
    """The audit trail could not be appended; the operation must fail."""

    error_code = "AUDIT_WRITE_FAILED"
    http_status = 500
