"""
Structured operational logging for the evidence kernel.
Audit events live in the database; these log lines mirror them for operators.
"""

import logging
from typing import Any, Dict, List

SENSITIVE_FIELDS = ['payload', 'content', 'data', 'secret', 'password', 'token', 'legal_basis']


class StructuredLogger:
    """Structured logger for draft, seal, idempotency and state-machine operations."""

    def __init__(self, name: str = "evidence_kernel"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        self.logger.info(message)

    def log_draft_operation(self, operation: str, tenant_id: str, draft_id: str, status: str = "success",
                            details: Dict[str, Any] = None):
        """Log a draft lifecycle operation."""
        log_details = {"tenant_id": tenant_id, "draft_id": draft_id}
        if details:
            log_details.update(sanitize_payload(details))

        self.log_operation(f"draft.{operation}", status, log_details)

    def log_validation_rejection(self, operation: str, tenant_id: str, errors: List[Any]):
        """Log field validation failures with codes only."""
        codes = []
        for error in errors:
            if isinstance(error, dict):
                codes.append(f"{error.get('field')}:{error.get('code')}")
            else:
                codes.append(str(error)[:100])

        log_details = {
            "tenant_id": tenant_id,
            "errors": codes,
            "error_count": len(codes)
        }
        self.log_operation(f"validation.{operation}", "rejected", log_details)

    def log_seal(self, tenant_id: str, draft_id: str, evidence_id: str, ledger_state: str,
                 payload_hash: str, status: str = "sealed"):
        """Log a completed seal."""
        log_details = {
            "tenant_id": tenant_id,
            "draft_id": draft_id,
            "evidence_id": evidence_id,
            "ledger_state": ledger_state,
            "payload_hash": payload_hash[:16]
        }
        self.log_operation("seal", status, log_details)

    def log_idempotency_decision(self, tenant_id: str, dataset_type: str, external_reference_id: str,
                                 decision: str, details: Dict[str, Any] = None):
        """Log the outcome of an idempotency key lookup."""
        log_details = {
            "tenant_id": tenant_id,
            "dataset_type": dataset_type,
            "external_reference_id": external_reference_id
        }
        if details:
            log_details.update(details)

        self.log_operation("idempotency.check", decision, log_details)

    def log_transition(self, tenant_id: str, evidence_id: str, flow: str, from_state: str, to_state: str,
                       status: str = "applied", reason: str = ""):
        """Log a state transition attempt."""
        log_details = {
            "tenant_id": tenant_id,
            "evidence_id": evidence_id,
            "flow": flow,
            "from_state": from_state,
            "to_state": to_state,
            "reason": reason[:100] if reason else ""
        }
        self.log_operation("state.transition", status, log_details)

    def log_audit_write(self, event_type: str, tenant_id: str, subject_id: str, outcome: str,
                        status: str = "written"):
        """Log an audit trail append."""
        log_details = {
            "event_type": event_type,
            "tenant_id": tenant_id,
            "subject_id": subject_id,
            "outcome": outcome
        }
        self.log_operation("audit.append", status, log_details)

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)


# Global logger instance
logger = StructuredLogger()


def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None) -> Any:
    """Sanitize payloads for log lines."""
    if sensitive_fields is None:
        sensitive_fields = SENSITIVE_FIELDS

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if reveal_sensitive or k not in sensitive_fields:
                sanitized[k] = sanitize_payload(v, reveal_sensitive, sensitive_fields)
            else:
                sanitized[k] = "[REDACTED]"
        return sanitized
    elif isinstance(payload, str):
        # Truncate long strings
        return payload[:100] + "..." if len(payload) > 100 else payload
    elif isinstance(payload, list):
        return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload]
    else:
        return payload
