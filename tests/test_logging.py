"""
Operational log lines and payload redaction.
"""

import logging

from util.logging import StructuredLogger, sanitize_payload


class TestSanitizePayload:
    def test_sensitive_keys_redacted(self):
        result = sanitize_payload({"payload": {"a": 1}, "legal_basis": "CONSENT", "draft_id": "draft_1"})
        assert result == {"payload": "[REDACTED]", "legal_basis": "[REDACTED]", "draft_id": "draft_1"}

    def test_nested_and_lists(self):
        result = sanitize_payload({"items": [{"token": "t"}, {"name": "x"}]})
        assert result == {"items": [{"token": "[REDACTED]"}, {"name": "x"}]}

    def test_long_strings_truncated(self):
        result = sanitize_payload({"rationale": "r" * 150})
        assert result["rationale"] == "r" * 100 + "..."

    def test_reveal_sensitive(self):
        assert sanitize_payload({"secret": "s"}, reveal_sensitive=True) == {"secret": "s"}

    def test_custom_sensitive_fields(self):
        assert sanitize_payload({"iban": "DE00", "payload": 1}, sensitive_fields=["iban"]) == {
            "iban": "[REDACTED]", "payload": 1}


class TestStructuredLogger:
    def test_operation_line(self, caplog):
        log = StructuredLogger("evidence_kernel.test")
        with caplog.at_level(logging.INFO, logger="evidence_kernel.test"):
            log.log_operation("seal", "sealed", {"evidence_id": "evd_1"})
        assert "Operation: seal, Status: sealed" in caplog.text
        assert "evd_1" in caplog.text

    def test_draft_operation_sanitized(self, caplog):
        log = StructuredLogger("evidence_kernel.test")
        with caplog.at_level(logging.INFO, logger="evidence_kernel.test"):
            log.log_draft_operation("create", "tenant-a", "draft_1", details={"payload": {"secret": "v"}})
        assert "draft.create" in caplog.text
        assert "[REDACTED]" in caplog.text
        assert "'v'" not in caplog.text

    def test_validation_rejection_lists_codes(self, caplog):
        log = StructuredLogger("evidence_kernel.test")
        with caplog.at_level(logging.INFO, logger="evidence_kernel.test"):
            log.log_validation_rejection("DRAFT_CREATE_REJECTED", "tenant-a",
                                         [{"field": "rationale", "code": "REQUIRED", "message": "m"}])
        assert "rationale:REQUIRED" in caplog.text
        assert "'error_count': 1" in caplog.text

    def test_seal_hash_shortened(self, caplog):
        log = StructuredLogger("evidence_kernel.test")
        with caplog.at_level(logging.INFO, logger="evidence_kernel.test"):
            log.log_seal("tenant-a", "draft_1", "evd_1", "SEALED", "a" * 64)
        assert "a" * 16 in caplog.text
        assert "a" * 17 not in caplog.text

    def test_transition_reason_truncated(self, caplog):
        log = StructuredLogger("evidence_kernel.test")
        with caplog.at_level(logging.INFO, logger="evidence_kernel.test"):
            log.log_transition("tenant-a", "evd_1", "ledger", "SEALED", "REJECTED", status="blocked",
                               reason="x" * 300)
        assert "Status: blocked" in caplog.text
        assert "x" * 101 not in caplog.text
