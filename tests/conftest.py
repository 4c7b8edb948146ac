"""
Shared fixtures: an isolated database per test, a frozen clock and ready-made declarations.
"""

import copy
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from evidence_kernel.core.blobs import InMemoryBlobStore
from evidence_kernel.core.clock import FixedClock, SequentialIdProvider
from evidence_kernel.core.kernel import build_kernel

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"
ACTOR = "alice"
CID = "cid-test-0001"

MANUAL_DECLARATION = {
    "ingestion_method": "MANUAL_ENTRY",
    "dataset_type": "SUPPLIER_MASTER",
    "declared_scope": "ENTIRE_ORGANIZATION",
    "rationale": "Quarterly supplier master refresh for CBAM reporting",
    "purpose_tags": ["CBAM"],
    "retention_policy": "7_YEARS",
    "payload": {"supplier_name": "Acme Metals GmbH", "country_code": "DE"},
}

FILE_UPLOAD_DECLARATION = {
    "ingestion_method": "FILE_UPLOAD",
    "source_system": "SAP",
    "dataset_type": "BOM",
    "declared_scope": "SITE",
    "scope_target_id": "site-hamburg-01",
    "rationale": "Bill of materials export for the Hamburg plant",
    "purpose_tags": ["PCF"],
    "retention_policy": "3_YEARS",
}

API_PUSH_DECLARATION = {
    "ingestion_method": "API_PUSH",
    "source_system": "CLIENT_SYSTEM",
    "dataset_type": "TRANSACTION",
    "declared_scope": "ENTIRE_ORGANIZATION",
    "rationale": "Nightly purchase order sync from the procurement platform",
    "purpose_tags": ["CBAM", "PCF"],
    "retention_policy": "STANDARD_1_YEAR",
    "external_reference_id": "po-2025-000123",
    "payload": {"order_id": "PO-123", "amount": 1250, "currency": "EUR"},
}


@pytest.fixture
def db_path(tmp_path):
    """Temporary database file for one test."""
    return str(tmp_path / "evidence.db")


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def kernel(db_path, clock):
    """Kernel wired to a fresh database, frozen clock and in-memory blobs."""
    return build_kernel(
        db_path=db_path,
        clock=clock,
        ids=SequentialIdProvider(),
        blobs=InMemoryBlobStore(),
        signing_key=b"test-seal-signing-key",
    )


@pytest.fixture
def declaration():
    """Factory for declarations: declaration("manual", rationale=...)."""
    templates = {
        "manual": MANUAL_DECLARATION,
        "file": FILE_UPLOAD_DECLARATION,
        "api": API_PUSH_DECLARATION,
    }

    def make(kind: str = "manual", **overrides):
        decl = copy.deepcopy(templates[kind])
        for key, value in overrides.items():
            if value is None:
                decl.pop(key, None)
            else:
                decl[key] = value
        return decl

    return make


@pytest.fixture
def client(kernel, db_path):
    """Test client bound to the test kernel."""
    from evidence_kernel.api import main
    from evidence_kernel.api.deps import get_kernel

    main.app.dependency_overrides[get_kernel] = lambda: kernel
    with patch('evidence_kernel.core.config.DB_PATH', db_path), \
         patch('evidence_kernel.core.config.API_AUTH_TOKEN', None):
        yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def headers():
    return {"X-Tenant-Id": TENANT, "X-Actor-Id": ACTOR, "X-Correlation-Id": CID}


@pytest.fixture
def other_headers():
    return {"X-Tenant-Id": OTHER_TENANT, "X-Actor-Id": "mallory"}
