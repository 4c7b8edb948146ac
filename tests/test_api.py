"""
HTTP surface: headers, status codes, error bodies and the end-to-end ingestion flows.
"""

from datetime import timedelta
from unittest.mock import patch

import pytest

from evidence_kernel.core.hashing import hash_bytes, hash_canonical_json
from evidence_kernel.core.kernel import build_kernel


def create(client, headers, body):
    response = client.post("/drafts", json=body, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["draft_id"]


def seal(client, headers, draft_id):
    return client.post(f"/drafts/{draft_id}/seal", headers=headers)


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "version": "1.0.0", "db_health": True}

    def test_health_checks_kernel_database(self, client, tmp_path):
        from evidence_kernel.api import main
        from evidence_kernel.api.deps import get_kernel

        other = build_kernel(db_path=str(tmp_path / "elsewhere.db"), blob_root=str(tmp_path / "blobs"),
                             initialize=False)
        main.app.dependency_overrides[get_kernel] = lambda: other

        body = client.get("/health").json()
        assert body["status"] == "unhealthy"
        assert body["db_health"] is False


class TestAuthentication:
    def test_missing_tenant_header(self, client, declaration):
        response = client.post("/drafts", json=declaration("manual"), headers={"X-Actor-Id": "alice"})
        assert response.status_code == 401
        assert response.json()["error_code"] == "UNAUTHENTICATED"

    def test_missing_actor_header(self, client):
        response = client.get("/drafts/draft_1", headers={"X-Tenant-Id": "tenant-a"})
        assert response.status_code == 401

    def test_bearer_token_enforced(self, client, headers, declaration):
        with patch('evidence_kernel.core.config.API_AUTH_TOKEN', 'shared-secret'):
            denied = client.post("/drafts", json=declaration("manual"), headers=headers)
            wrong = client.post("/drafts", json=declaration("manual"),
                                headers={**headers, "Authorization": "Bearer nope"})
            allowed = client.post("/drafts", json=declaration("manual"),
                                  headers={**headers, "Authorization": "Bearer shared-secret"})

        assert denied.status_code == 401
        assert wrong.status_code == 401
        assert allowed.status_code == 201


class TestCorrelation:
    def test_caller_correlation_id_echoed(self, client, headers, declaration):
        response = client.post("/drafts", json=declaration("manual"), headers=headers)
        assert response.headers["X-Correlation-Id"] == headers["X-Correlation-Id"]
        assert response.json()["correlation_id"] == headers["X-Correlation-Id"]

    def test_correlation_id_on_errors(self, client, headers):
        response = client.get("/drafts/draft_missing", headers=headers)
        assert response.status_code == 404
        assert response.json()["correlation_id"] == headers["X-Correlation-Id"]
        assert response.headers["X-Correlation-Id"] == headers["X-Correlation-Id"]

    def test_correlation_id_in_audit(self, client, headers, declaration):
        draft_id = create(client, headers, declaration("manual"))
        events = client.get("/audit", params={"subject_id": draft_id}, headers=headers).json()["events"]
        assert events[0]["correlation_id"] == headers["X-Correlation-Id"]


class TestDraftEndpoints:
    def test_create_draft(self, client, headers, declaration):
        response = client.post("/drafts", json=declaration("manual"), headers=headers)
        body = response.json()

        assert response.status_code == 201
        assert body["status"] == "DRAFT"
        assert body["binding_context"]["link_status"] == "LINKED"
        assert body["draft_id"]

    def test_validation_errors_listed(self, client, headers, declaration):
        response = client.post("/drafts", json=declaration("manual", rationale=None, purpose_tags=[]),
                               headers=headers)
        body = response.json()

        assert response.status_code == 422
        assert body["error_code"] == "VALIDATION_ERROR"
        assert {(e["field"], e["code"]) for e in body["field_errors"]} == {
            ("rationale", "REQUIRED"), ("purpose_tags", "PURPOSE_TAGS_REQUIRED")}

    def test_quarantine_deadline_too_far(self, client, headers, declaration, clock):
        body = declaration("manual", declared_scope="UNKNOWN", quarantine_reason="Entity mapping pending",
                           resolution_due_date=(clock.now().date() + timedelta(days=91)).isoformat())
        response = client.post("/drafts", json=body, headers=headers)
        assert response.status_code == 422
        assert response.json()["error_code"] == "RESOLUTION_DUE_DATE_TOO_FAR"

    def test_unknown_body_field(self, client, headers, declaration):
        response = client.post("/drafts", json=declaration("manual", colour="blue"), headers=headers)
        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_ERROR"
        assert response.json()["field_errors"][0]["field"] == "colour"

    def test_client_payload_hash_rejected(self, client, headers, declaration):
        response = client.post("/drafts", json=declaration("manual", payload_hash="ab" * 32), headers=headers)
        assert response.status_code == 422
        assert response.json()["error_code"] == "CLIENT_HASH_REJECTED"

    def test_foreign_tenant_in_body(self, client, headers, declaration):
        response = client.post("/drafts", json=declaration("manual", tenant_id="tenant-b"), headers=headers)
        assert response.status_code == 403
        assert response.json()["error_code"] == "FORBIDDEN"

    def test_cross_tenant_read_is_not_found(self, client, headers, other_headers, declaration):
        draft_id = create(client, headers, declaration("manual"))
        assert client.get(f"/drafts/{draft_id}", headers=headers).status_code == 200
        assert client.get(f"/drafts/{draft_id}", headers=other_headers).status_code == 404

    def test_patch_mutable_field(self, client, headers, declaration):
        draft_id = create(client, headers, declaration("manual"))
        response = client.patch(f"/drafts/{draft_id}", json={"purpose_tags": ["CSRD"]}, headers=headers)
        assert response.status_code == 200
        assert response.json()["purpose_tags"] == ["CSRD"]

    def test_patch_binding_field(self, client, headers, declaration):
        draft_id = create(client, headers, declaration("manual"))
        response = client.patch(f"/drafts/{draft_id}", json={"dataset_type": "PRODUCT_MASTER"}, headers=headers)
        assert response.status_code == 422
        assert response.json()["error_code"] == "BINDING_FIELDS_IMMUTABLE"
        assert response.json()["fields"] == ["dataset_type"]

    def test_patch_null_flag(self, client, headers, declaration):
        draft_id = create(client, headers, declaration("manual"))
        response = client.patch(f"/drafts/{draft_id}", json={"contains_personal_data": None}, headers=headers)
        assert response.status_code == 422
        assert [(e["field"], e["code"]) for e in response.json()["field_errors"]] == [
            ("contains_personal_data", "INVALID_VALUE")]

        events = client.get("/audit", params={"subject_id": draft_id}, headers=headers).json()["events"]
        assert events[0]["event_type"] == "DRAFT_UPDATE_REJECTED"

    def test_attach_payload(self, client, headers, declaration):
        draft_id = create(client, headers, declaration("api", payload=None))
        payload = {"order_id": "PO-77", "amount": 5}
        response = client.post(f"/drafts/{draft_id}/payload", json={"payload": payload}, headers=headers)
        assert response.status_code == 200
        assert response.json()["payload_hash"] == hash_canonical_json(payload)


class TestFileUploadFlow:
    def test_file_upload_end_to_end(self, client, headers, declaration):
        draft_id = create(client, headers, declaration("file"))

        response = seal(client, headers, draft_id)
        assert response.status_code == 422
        assert response.json()["error_code"] == "FILE_REQUIRED"

        content = b"part,qty\nA-1,4\n"
        registered = client.post(f"/drafts/{draft_id}/attachments", headers=headers, json={
            "filename": "bom.csv", "declared_size": len(content), "declared_content_type": "text/csv"})
        assert registered.status_code == 201
        assert registered.json()["content_hash"] is None
        attachment_id = registered.json()["attachment_id"]

        response = seal(client, headers, draft_id)
        assert response.status_code == 422
        assert response.json()["error_code"] == "FILE_HASH_MISSING"

        uploaded = client.put(f"/drafts/{draft_id}/attachments/{attachment_id}/content", content=content,
                              headers={**headers, "Content-Type": "application/octet-stream"})
        assert uploaded.status_code == 200
        assert uploaded.json()["content_hash"] == hash_bytes(content)

        view = client.post(f"/drafts/{draft_id}/for-seal", headers=headers).json()
        assert view["validation"]["ready_to_seal"] is True
        assert len(view["files"]) == 1

        response = seal(client, headers, draft_id)
        assert response.status_code == 201
        body = response.json()
        assert body["ledger_state"] == "SEALED"
        assert body["payload_hash"] == hash_bytes(content)
        assert body["replayed"] is False

    def test_client_content_hash_rejected(self, client, headers, declaration):
        draft_id = create(client, headers, declaration("file"))
        response = client.post(f"/drafts/{draft_id}/attachments", headers=headers, json={
            "filename": "bom.csv", "declared_size": 3, "declared_content_type": "text/csv",
            "content_hash": "ab" * 32})
        assert response.status_code == 422
        assert response.json()["error_code"] == "CLIENT_HASH_REJECTED"


class TestSealEndpoint:
    def test_seal_manual_entry(self, client, headers, declaration):
        draft_id = create(client, headers, declaration("manual"))
        response = seal(client, headers, draft_id)
        body = response.json()

        assert response.status_code == 201
        assert body["ledger_state"] == "SEALED"
        assert body["trust_level"] == "LOW"
        assert body["review_status"] == "PENDING_REVIEW"
        assert body["current_state"] == "SEALED"
        assert body["classification_state"] == "RAW"

    def test_reseal_conflict(self, client, headers, declaration):
        draft_id = create(client, headers, declaration("manual"))
        evidence_id = seal(client, headers, draft_id).json()["evidence_id"]

        response = seal(client, headers, draft_id)
        assert response.status_code == 409
        assert response.json()["error_code"] == "SEALED_IMMUTABLE"
        assert response.json()["evidence_id"] == evidence_id

    def test_quarantined_seal(self, client, headers, declaration, clock):
        body = declaration("manual", declared_scope="UNKNOWN", quarantine_reason="Entity mapping pending",
                           resolution_due_date=(clock.now().date() + timedelta(days=20)).isoformat())
        draft_id = create(client, headers, body)
        response = seal(client, headers, draft_id)
        assert response.status_code == 201
        assert response.json()["ledger_state"] == "QUARANTINED"

    def test_replay_returns_200(self, client, headers, declaration):
        first = create(client, headers, declaration("api"))
        second = create(client, headers, declaration("api"))

        original = seal(client, headers, first)
        replay = seal(client, headers, second)

        assert original.status_code == 201
        assert replay.status_code == 200
        assert replay.json()["replayed"] is True
        assert replay.json()["evidence_id"] == original.json()["evidence_id"]

    def test_idempotency_conflict(self, client, headers, declaration):
        first = create(client, headers, declaration("api"))
        second = create(client, headers, declaration("api", payload={"order_id": "PO-123", "amount": 1}))

        original = seal(client, headers, first).json()
        response = seal(client, headers, second)
        body = response.json()

        assert response.status_code == 409
        assert body["error_code"] == "IDEMPOTENCY_CONFLICT"
        assert body["existing_evidence_id"] == original["evidence_id"]
        assert body["existing_payload_hash"] == original["payload_hash"]
        assert body["provided_payload_hash"] == hash_canonical_json({"order_id": "PO-123", "amount": 1})

    def test_storage_timeout_is_503(self, client, headers, declaration):
        from evidence_kernel.core.errors import StorageTimeoutError

        draft_id = create(client, headers, declaration("manual"))
        with patch('evidence_kernel.core.sealing.transaction',
                   side_effect=StorageTimeoutError("Storage did not respond within 5s")):
            response = seal(client, headers, draft_id)

        assert response.status_code == 503
        assert response.json()["error_code"] == "STORAGE_TIMEOUT"
        assert response.json()["retryable"] is True
        assert response.headers["Retry-After"] == "1"


class TestEvidenceEndpoints:
    @pytest.fixture
    def evidence_id(self, client, headers, declaration):
        draft_id = create(client, headers, declaration("manual"))
        return seal(client, headers, draft_id).json()["evidence_id"]

    def test_get_evidence(self, client, headers, evidence_id):
        body = client.get(f"/evidence/{evidence_id}", headers=headers).json()
        assert body["evidence_id"] == evidence_id
        assert [t["flow"] for t in body["state_history"]] == ["classification", "ledger"]

    def test_cross_tenant_evidence_not_found(self, client, other_headers, evidence_id):
        assert client.get(f"/evidence/{evidence_id}", headers=other_headers).status_code == 404

    def test_patch_evidence_conflict(self, client, headers, evidence_id):
        response = client.patch(f"/evidence/{evidence_id}", json={"payload_hash": "00" * 32}, headers=headers)
        assert response.status_code == 409
        assert response.json()["error_code"] == "SEALED_IMMUTABLE"

        events = client.get("/audit", params={"subject_id": evidence_id}, headers=headers).json()["events"]
        assert events[0]["event_type"] == "EVIDENCE_MUTATION_BLOCKED"

    def test_verify(self, client, headers, evidence_id):
        body = client.get(f"/evidence/{evidence_id}/verify", headers=headers).json()
        assert body["valid"] is True

    def test_transition(self, client, headers, evidence_id):
        response = client.post(f"/evidence/{evidence_id}/transition", headers=headers, json={
            "from_state": "SEALED", "to_state": "REJECTED", "reason": "Superseded by audited figures"})
        assert response.status_code == 200
        assert response.json()["state"] == "REJECTED"

        evidence = client.get(f"/evidence/{evidence_id}", headers=headers).json()
        assert evidence["current_state"] == "REJECTED"
        assert evidence["ledger_state"] == "SEALED"

    def test_invalid_transition(self, client, headers, evidence_id):
        response = client.post(f"/evidence/{evidence_id}/transition", headers=headers, json={
            "to_state": "DRAFT", "reason": "Reopen"})
        body = response.json()

        assert response.status_code == 400
        assert body["error_code"] == "INVALID_TRANSITION"
        assert body["current_state"] == "SEALED"
        assert body["allowed_transitions"] == ["REJECTED"]

    def test_classification_transition(self, client, headers, evidence_id):
        response = client.post(f"/evidence/{evidence_id}/transition", headers=headers, json={
            "flow": "classification", "to_state": "CLASSIFIED", "reason": "Mapped to CN codes"})
        assert response.status_code == 200
        assert response.json()["flow"] == "classification"


class TestAuditEndpoint:
    def test_audit_is_tenant_scoped(self, client, headers, other_headers, declaration):
        create(client, headers, declaration("manual"))
        mine = client.get("/audit", headers=headers).json()["events"]
        theirs = client.get("/audit", headers=other_headers).json()["events"]

        assert [e["event_type"] for e in mine] == ["DRAFT_CREATED"]
        assert theirs == []

    def test_limit_bounds(self, client, headers):
        assert client.get("/audit", params={"limit": 0}, headers=headers).status_code == 422
