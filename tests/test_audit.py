"""
Audit trail: append, tenant scoping, failure handling and the rejection recorder.
"""

import sqlite3
from unittest.mock import Mock, patch

import pytest

from evidence_kernel.core import audit as events
from evidence_kernel.core.audit import AuditTrail
from evidence_kernel.core.clock import FixedClock, SequentialIdProvider
from evidence_kernel.core.errors import (
    AuditWriteError,
    FieldValidationError,
    NotFoundError,
    StorageTimeoutError,
    TenantIsolationError,
)
from evidence_kernel.core.schema import AuditOutcome, FieldError

TENANT = "tenant-a"


class TestAuditLog:
    def test_log_and_list(self, kernel):
        kernel.audit.log(TENANT, "cid-1", events.DRAFT_CREATED, "draft_1", "alice", {"k": "v"})
        kernel.audit.log(TENANT, "cid-2", events.DRAFT_UPDATED, "draft_1", "alice")

        trail = kernel.audit.list_events(TENANT)
        assert [e.event_type for e in trail] == [events.DRAFT_UPDATED, events.DRAFT_CREATED]
        assert trail[1].detail == {"k": "v"}
        assert trail[1].correlation_id == "cid-1"
        assert trail[0].outcome == AuditOutcome.SUCCESS

    def test_tenant_scoped(self, kernel):
        kernel.audit.log(TENANT, "cid-1", events.DRAFT_CREATED, "draft_1", "alice")
        kernel.audit.log("tenant-b", "cid-2", events.DRAFT_CREATED, "draft_2", "bob")

        assert [e.subject_id for e in kernel.audit.list_events(TENANT)] == ["draft_1"]
        assert [e.subject_id for e in kernel.audit.list_events("tenant-b")] == ["draft_2"]

    def test_filter_by_subject_and_limit(self, kernel):
        for i in range(5):
            kernel.audit.log(TENANT, f"cid-{i}", events.DRAFT_UPDATED, f"draft_{i % 2}", "alice")

        assert len(kernel.audit.list_events(TENANT, subject_id="draft_0")) == 3
        assert len(kernel.audit.list_events(TENANT, limit=2)) == 2

    def test_blank_subject_recorded_as_dash(self, kernel):
        event = kernel.audit.log(TENANT, "cid-1", events.DRAFT_CREATE_REJECTED, "", "alice")
        assert event.subject_id == "-"

    def test_verbose_mode_logs_sanitized_detail(self, kernel):
        with patch('evidence_kernel.core.config.AUDIT_LOG_LEVEL', 'verbose'), \
             patch('evidence_kernel.core.audit.logger') as mock_logger:
            kernel.audit.log(TENANT, "cid-1", events.PAYLOAD_ATTACHED, "draft_1", "alice",
                             {"payload": {"secret": "value"}})

        mock_logger.log_audit_write.assert_called_once_with(events.PAYLOAD_ATTACHED, TENANT, "draft_1", "SUCCESS")
        debug_line = mock_logger.debug.call_args[0][0]
        assert "[REDACTED]" in debug_line
        assert "value" not in debug_line


class TestAuditFailures:
    def trail(self, error):
        repository = Mock()
        repository.insert.side_effect = error
        return AuditTrail(repository, FixedClock(), SequentialIdProvider())

    def test_write_failure_raises(self):
        with pytest.raises(AuditWriteError):
            self.trail(sqlite3.OperationalError("disk I/O error")).log(TENANT, "cid", events.DRAFT_CREATED,
                                                                       "draft_1", "alice")

    def test_lock_raises_storage_timeout(self):
        with pytest.raises(StorageTimeoutError):
            self.trail(sqlite3.OperationalError("database is locked")).log(TENANT, "cid", events.DRAFT_CREATED,
                                                                           "draft_1", "alice")


class TestRejections:
    def test_kernel_error_audited_and_reraised(self, kernel):
        with pytest.raises(NotFoundError):
            with kernel.audit.rejections(TENANT, "cid", events.SEAL_REJECTED, "draft_9", "alice"):
                raise NotFoundError("Draft draft_9 not found")

        event = kernel.audit.list_events(TENANT)[0]
        assert event.event_type == events.SEAL_REJECTED
        assert event.outcome == AuditOutcome.REJECTED
        assert event.detail == {"error_code": "NOT_FOUND", "message": "Draft draft_9 not found"}

    def test_field_errors_kept_in_detail(self, kernel):
        error = FieldValidationError([FieldError("rationale", "REQUIRED", "rationale is required")])
        with pytest.raises(FieldValidationError):
            with kernel.audit.rejections(TENANT, "cid", events.DRAFT_CREATE_REJECTED, "-", "alice"):
                raise error

        detail = kernel.audit.list_events(TENANT)[0].detail
        assert detail["error_code"] == "REQUIRED"
        assert detail["field_errors"] == [{"field": "rationale", "code": "REQUIRED",
                                           "message": "rationale is required"}]

    def test_isolation_violation_recorded(self, kernel):
        with pytest.raises(TenantIsolationError):
            with kernel.audit.rejections(TENANT, "cid", events.DRAFT_CREATE_REJECTED, "-", "alice"):
                raise TenantIsolationError("Cross-tenant reference rejected")

        assert kernel.audit.list_events(TENANT)[0].event_type == events.TENANT_ISOLATION_VIOLATION

    def test_infrastructure_errors_not_audited(self, kernel):
        with pytest.raises(StorageTimeoutError):
            with kernel.audit.rejections(TENANT, "cid", events.SEAL_REJECTED, "draft_1", "alice"):
                raise StorageTimeoutError("Storage did not respond")
        assert kernel.audit.list_events(TENANT) == []

    def test_non_kernel_errors_pass_through(self, kernel):
        with pytest.raises(RuntimeError):
            with kernel.audit.rejections(TENANT, "cid", events.SEAL_REJECTED, "draft_1", "alice"):
                raise RuntimeError("bug")
        assert kernel.audit.list_events(TENANT) == []
