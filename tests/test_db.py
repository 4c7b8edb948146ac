"""
Storage layer: schema, health, transactions, error translation and the idempotency index.
"""

import sqlite3
from unittest.mock import patch

import pytest

from evidence_kernel.core.db import REQUIRED_TABLES, get_db, health_check, init_db, transaction, translate_sqlite_error
from evidence_kernel.core.errors import BindingFieldsImmutableError, ImmutableConflictError, StorageTimeoutError

EVIDENCE_INSERT = (
    "INSERT INTO sealed_evidence (evidence_id, draft_id, tenant_id, ingestion_method, dataset_type, declared_scope, "
    "external_reference_id, ledger_state, payload_hash, metadata_hash, metadata_json, leaf_hashes, sealed_at, "
    "retention_end, trust_level, review_status, seal_signature, sealed_by) "
    "VALUES (?, ?, ?, 'API_PUSH', ?, 'ENTIRE_ORGANIZATION', ?, 'SEALED', 'h', 'm', '{}', '[]', "
    "'2025-01-15T12:00:00+00:00', '2026-01-15T12:00:00+00:00', 'HIGH', 'PENDING_REVIEW', 'sig', 'alice')"
)


class TestSchema:
    def test_init_creates_tables(self, db_path):
        init_db(db_path)
        with get_db(db_path) as conn:
            names = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        assert set(REQUIRED_TABLES) <= names

    def test_init_is_idempotent(self, db_path):
        init_db(db_path)
        init_db(db_path)
        assert health_check(db_path)

    def test_health_check_on_empty_database(self, db_path):
        with get_db(db_path):
            pass
        assert not health_check(db_path)

    def test_uses_configured_path(self, db_path):
        with patch('evidence_kernel.core.config.DB_PATH', db_path):
            init_db()
            assert health_check()

    def test_rows_by_name(self, db_path):
        init_db(db_path)
        with get_db(db_path) as conn:
            row = conn.execute("SELECT 1 AS one").fetchone()
        assert row["one"] == 1


class TestTransaction:
    def test_commit(self, db_path):
        init_db(db_path)
        with transaction(db_path) as conn:
            conn.execute(EVIDENCE_INSERT, ("evd_1", "draft_1", "tenant-a", "TRANSACTION", "ext-1"))
        with get_db(db_path) as conn:
            assert conn.execute("SELECT COUNT(*) FROM sealed_evidence").fetchone()[0] == 1

    def test_rollback_on_error(self, db_path):
        init_db(db_path)
        with pytest.raises(RuntimeError):
            with transaction(db_path) as conn:
                conn.execute(EVIDENCE_INSERT, ("evd_1", "draft_1", "tenant-a", "TRANSACTION", "ext-1"))
                raise RuntimeError("abort")
        with get_db(db_path) as conn:
            assert conn.execute("SELECT COUNT(*) FROM sealed_evidence").fetchone()[0] == 0

    def test_trigger_error_translated(self, db_path):
        init_db(db_path)
        with transaction(db_path) as conn:
            conn.execute(EVIDENCE_INSERT, ("evd_1", "draft_1", "tenant-a", "TRANSACTION", "ext-1"))
        with pytest.raises(ImmutableConflictError):
            with transaction(db_path) as conn:
                conn.execute("DELETE FROM sealed_evidence")

    def test_lock_becomes_storage_timeout(self, db_path):
        init_db(db_path)
        blocker = sqlite3.connect(db_path, isolation_level=None)
        blocker.execute("BEGIN IMMEDIATE")
        try:
            with patch('evidence_kernel.core.config.STORAGE_TIMEOUT_SEC', 0.1):
                with pytest.raises(StorageTimeoutError):
                    with transaction(db_path):
                        pass
        finally:
            blocker.execute("ROLLBACK")
            blocker.close()


class TestIdempotencyIndex:
    def test_duplicate_key_rejected_by_storage(self, db_path):
        init_db(db_path)
        with transaction(db_path) as conn:
            conn.execute(EVIDENCE_INSERT, ("evd_1", "draft_1", "tenant-a", "TRANSACTION", "ext-1"))
        with pytest.raises(sqlite3.IntegrityError):
            with transaction(db_path) as conn:
                conn.execute(EVIDENCE_INSERT, ("evd_2", "draft_2", "tenant-a", "TRANSACTION", "ext-1"))

    def test_key_includes_tenant_and_dataset(self, db_path):
        init_db(db_path)
        with transaction(db_path) as conn:
            conn.execute(EVIDENCE_INSERT, ("evd_1", "draft_1", "tenant-a", "TRANSACTION", "ext-1"))
            conn.execute(EVIDENCE_INSERT, ("evd_2", "draft_2", "tenant-b", "TRANSACTION", "ext-1"))
            conn.execute(EVIDENCE_INSERT, ("evd_3", "draft_3", "tenant-a", "BOM", "ext-1"))

    def test_records_without_key_not_constrained(self, db_path):
        init_db(db_path)
        with transaction(db_path) as conn:
            conn.execute(EVIDENCE_INSERT, ("evd_1", "draft_1", "tenant-a", "TRANSACTION", None))
            conn.execute(EVIDENCE_INSERT, ("evd_2", "draft_2", "tenant-a", "TRANSACTION", None))


class TestErrorTranslation:
    def test_lock(self):
        assert isinstance(translate_sqlite_error(sqlite3.OperationalError("database is locked")),
                          StorageTimeoutError)

    def test_binding_trigger(self):
        error = translate_sqlite_error(sqlite3.IntegrityError("BINDING_FIELDS_IMMUTABLE"))
        assert isinstance(error, BindingFieldsImmutableError)

    def test_append_only_trigger(self):
        error = translate_sqlite_error(sqlite3.IntegrityError("APPEND_ONLY: audit_events"))
        assert isinstance(error, ImmutableConflictError)

    def test_other_errors_unchanged(self):
        original = sqlite3.IntegrityError("UNIQUE constraint failed: sealed_evidence.draft_id")
        assert translate_sqlite_error(original) is original
