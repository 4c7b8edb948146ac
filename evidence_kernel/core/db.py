"""
SQLite storage for the evidence kernel.
Schema, append-only triggers, bounded-timeout connections and write transactions.
"""

import sqlite3
from contextlib import contextmanager
from typing import Generator, Optional

from . import config
from .errors import BindingFieldsImmutableError, ImmutableConflictError, StorageTimeoutError

REQUIRED_TABLES = [
    "drafts",
    "attachments",
    "sealed_evidence",
    "state_history",
    "audit_events",
    "ingestion_profiles",
]

_LOCK_MESSAGES = ("database is locked", "database is busy", "database table is locked")


def translate_sqlite_error(exc: sqlite3.Error) -> Exception:
    """Map driver errors onto kernel errors; anything else is returned unchanged."""
    message = str(exc)
    if isinstance(exc, sqlite3.OperationalError) and any(m in message for m in _LOCK_MESSAGES):
        return StorageTimeoutError(f"Storage did not respond within {config.STORAGE_TIMEOUT_SEC}s")
    if "BINDING_FIELDS_IMMUTABLE" in message:
        return BindingFieldsImmutableError(["ingestion_method", "dataset_type", "declared_scope", "scope_target_id"])
    if "SEALED_IMMUTABLE" in message or "APPEND_ONLY" in message:
        return ImmutableConflictError("Record is immutable")
    return exc


@contextmanager
def get_db(db_path: Optional[str] = None) -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite connection in autocommit mode; writers open their own transaction."""
    path = db_path or config.DB_PATH
    config.ensure_db_directory(path)
    try:
        conn = sqlite3.connect(path, timeout=config.STORAGE_TIMEOUT_SEC, isolation_level=None)
    except sqlite3.OperationalError as e:
        raise translate_sqlite_error(e) from e
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(db_path: Optional[str] = None) -> Generator[sqlite3.Connection, None, None]:
    """
    Run a unit of work inside BEGIN IMMEDIATE.

    The write lock is taken up front so two sealers of the same draft serialize
    on storage rather than racing. Any exception rolls everything back.
    """
    with get_db(db_path) as conn:
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            translated = translate_sqlite_error(e)
            if translated is e:
                raise
            raise translated from e
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise


def init_db(db_path: Optional[str] = None):
    """Initialize the database with required tables, indexes and triggers."""
    with get_db(db_path) as conn:
        cursor = conn.cursor()

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS drafts (
                draft_id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                ingestion_method TEXT NOT NULL,
                source_system TEXT NOT NULL,
                dataset_type TEXT NOT NULL,
                declared_scope TEXT NOT NULL,
                scope_target_id TEXT,
                rationale TEXT NOT NULL,
                purpose_tags TEXT NOT NULL,       -- sorted JSON list
                retention_policy TEXT NOT NULL,
                retention_custom_days INTEGER,
                contains_personal_data INTEGER NOT NULL DEFAULT 0,
                legal_basis TEXT,
                quarantine_reason TEXT,
                resolution_due_date TEXT,
                external_reference_id TEXT,
                snapshot_timestamp TEXT,
                connector_reference TEXT,
                export_job_id TEXT,
                supplier_portal_request_id TEXT,
                payload TEXT,                     -- canonical JSON object
                status TEXT NOT NULL DEFAULT 'DRAFT',
                created_by TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS attachments (
                attachment_id TEXT PRIMARY KEY,
                draft_id TEXT NOT NULL REFERENCES drafts(draft_id),
                tenant_id TEXT NOT NULL,
                filename TEXT NOT NULL,
                declared_size INTEGER NOT NULL,
                declared_content_type TEXT NOT NULL,
                content_hash TEXT,                -- server computed only
                storage_ref TEXT,
                created_at TEXT NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS sealed_evidence (
                evidence_id TEXT PRIMARY KEY,
                draft_id TEXT NOT NULL UNIQUE,
                tenant_id TEXT NOT NULL,
                ingestion_method TEXT NOT NULL,
                dataset_type TEXT NOT NULL,
                declared_scope TEXT NOT NULL,
                external_reference_id TEXT,
                ledger_state TEXT NOT NULL,
                payload_hash TEXT NOT NULL,
                metadata_hash TEXT NOT NULL,
                metadata_json TEXT NOT NULL,
                leaf_hashes TEXT NOT NULL,
                sealed_at TEXT NOT NULL,
                retention_end TEXT NOT NULL,
                trust_level TEXT NOT NULL,
                review_status TEXT NOT NULL,
                seal_signature TEXT NOT NULL,
                sealed_by TEXT NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS state_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                evidence_id TEXT NOT NULL REFERENCES sealed_evidence(evidence_id),
                tenant_id TEXT NOT NULL,
                flow TEXT NOT NULL,               -- 'ledger' | 'classification'
                sequence INTEGER NOT NULL,
                from_state TEXT,
                to_state TEXT NOT NULL,
                reason TEXT NOT NULL,
                actor TEXT NOT NULL,
                transitioned_at TEXT NOT NULL,
                UNIQUE (evidence_id, flow, sequence)
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS audit_events (
                event_id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                correlation_id TEXT NOT NULL,
                event_type TEXT NOT NULL,
                subject_id TEXT NOT NULL,
                actor TEXT NOT NULL,
                created_at TEXT NOT NULL,
                outcome TEXT NOT NULL,            -- 'SUCCESS' | 'REJECTED'
                detail TEXT NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS ingestion_profiles (
                profile_id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                dataset_type TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                ingestion_path TEXT NOT NULL,
                authority_type TEXT NOT NULL,
                status TEXT NOT NULL,             -- 'ACTIVE' | 'EXPIRED'
                expires_at TEXT
            )
        ''')

        # Idempotency key, enforced by storage rather than by the guard alone
        cursor.execute('''
            CREATE UNIQUE INDEX IF NOT EXISTS ux_evidence_idempotency
            ON sealed_evidence(tenant_id, dataset_type, external_reference_id)
            WHERE external_reference_id IS NOT NULL
        ''')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_drafts_tenant ON drafts(tenant_id, draft_id)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_attachments_draft ON attachments(tenant_id, draft_id)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_audit_tenant_ts ON audit_events(tenant_id, created_at DESC)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_history_evidence ON state_history(tenant_id, evidence_id)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_profiles_tenant ON ingestion_profiles(tenant_id, dataset_type)')

        cursor.execute('''
            CREATE TRIGGER IF NOT EXISTS drafts_binding_fields_immutable
            BEFORE UPDATE ON drafts
            WHEN OLD.ingestion_method IS NOT NEW.ingestion_method
              OR OLD.dataset_type IS NOT NEW.dataset_type
              OR OLD.declared_scope IS NOT NEW.declared_scope
              OR OLD.scope_target_id IS NOT NEW.scope_target_id
              OR OLD.tenant_id IS NOT NEW.tenant_id
            BEGIN
                SELECT RAISE(ABORT, 'BINDING_FIELDS_IMMUTABLE');
            END
        ''')
        cursor.execute('''
            CREATE TRIGGER IF NOT EXISTS drafts_sealed_immutable
            BEFORE UPDATE ON drafts
            WHEN OLD.status != 'DRAFT'
            BEGIN
                SELECT RAISE(ABORT, 'SEALED_IMMUTABLE');
            END
        ''')
        cursor.execute('''
            CREATE TRIGGER IF NOT EXISTS attachments_hash_immutable
            BEFORE UPDATE ON attachments
            WHEN OLD.content_hash IS NOT NULL
            BEGIN
                SELECT RAISE(ABORT, 'SEALED_IMMUTABLE');
            END
        ''')

        for table in ("sealed_evidence", "state_history", "audit_events"):
            for action in ("UPDATE", "DELETE"):
                cursor.execute(f'''
                    CREATE TRIGGER IF NOT EXISTS {table}_no_{action.lower()}
                    BEFORE {action} ON {table}
                    BEGIN
                        SELECT RAISE(ABORT, 'APPEND_ONLY: {table}');
                    END
                ''')


def health_check(db_path: Optional[str] = None) -> bool:
    """Check database health."""
    try:
        with get_db(db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table';")
            table_names = [row[0] for row in cursor.fetchall()]
            return all(table in table_names for table in REQUIRED_TABLES)
    except (sqlite3.Error, StorageTimeoutError):
        return False
