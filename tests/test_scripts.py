"""
Ops scripts: schema init, ingestion profile seeding and evidence verification.
"""

import importlib.util
import os

import pytest

from evidence_kernel.core.clock import SystemClock
from evidence_kernel.core.db import health_check
from evidence_kernel.core.kernel import build_kernel
from evidence_kernel.core.schema import DatasetType

SCRIPTS_DIR = os.path.join(os.path.dirname(__file__), "..", "scripts")


def load_script(name):
    spec = importlib.util.spec_from_file_location(f"scripts_{name}", os.path.join(SCRIPTS_DIR, f"{name}.py"))
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestInitDbScript:
    def test_creates_schema(self, db_path, capsys):
        assert load_script("init_db").main(["--db-path", db_path]) == 0
        assert health_check(db_path)
        assert "Database ready" in capsys.readouterr().out


class TestSeedProfileScript:
    def test_seed_active_profile(self, db_path):
        script = load_script("seed_ingestion_profile")
        assert script.main(["--tenant", "tenant-a", "--dataset-type", "BOM", "--db-path", db_path,
                            "--profile-id", "prof_bom"]) == 0

        kernel = build_kernel(db_path=db_path, initialize=False, signing_key=b"k")
        profile = kernel.profiles.get_active("tenant-a", DatasetType.BOM, SystemClock().now())
        assert profile.profile_id == "prof_bom"

    def test_bad_expiry(self, db_path):
        script = load_script("seed_ingestion_profile")
        assert script.main(["--tenant", "tenant-a", "--dataset-type", "BOM", "--db-path", db_path,
                            "--expires-at", "soon"]) == 2

    def test_unknown_dataset_type(self, db_path):
        script = load_script("seed_ingestion_profile")
        with pytest.raises(SystemExit):
            script.main(["--tenant", "tenant-a", "--dataset-type", "SPREADSHEET", "--db-path", db_path])


class TestVerifyScript:
    @pytest.fixture
    def sealed_kernel(self, tmp_path, declaration):
        db_path = str(tmp_path / "evidence.db")
        blob_root = str(tmp_path / "blobs")
        kernel = build_kernel(db_path=db_path, blob_root=blob_root, signing_key=b"script-key")
        draft = kernel.drafts.create_draft("tenant-a", "alice", declaration("file"), "cid")
        content = b"part,qty\nA-1,4\n"
        attachment = kernel.drafts.register_attachment("tenant-a", "alice", draft.draft_id, "bom.csv",
                                                       len(content), "text/csv", "cid")
        kernel.drafts.upload_attachment_content("tenant-a", "alice", draft.draft_id, attachment.attachment_id,
                                                content, "cid")
        kernel.sealing.seal("tenant-a", draft.draft_id, "alice", "cid")
        return db_path, blob_root

    def test_all_valid(self, sealed_kernel, capsys, monkeypatch):
        db_path, blob_root = sealed_kernel
        monkeypatch.setattr('evidence_kernel.core.config.SEAL_SIGNING_KEY', 'script-key')

        code = load_script("verify_evidence").main(["--tenant", "tenant-a", "--db-path", db_path,
                                                    "--blob-root", blob_root])
        assert code == 0
        assert "0 failure(s)" in capsys.readouterr().out

    def test_wrong_key_fails(self, sealed_kernel, capsys, monkeypatch):
        db_path, blob_root = sealed_kernel
        monkeypatch.setattr('evidence_kernel.core.config.SEAL_SIGNING_KEY', 'not-the-key')

        code = load_script("verify_evidence").main(["--tenant", "tenant-a", "--db-path", db_path,
                                                    "--blob-root", blob_root])
        assert code == 1
        assert "failed signature" in capsys.readouterr().out

    def test_unknown_evidence(self, sealed_kernel, capsys):
        db_path, blob_root = sealed_kernel
        code = load_script("verify_evidence").main(["--tenant", "tenant-a", "--db-path", db_path,
                                                    "--blob-root", blob_root, "--evidence-id", "evd_missing"])
        assert code == 1
        assert "NOT_FOUND" in capsys.readouterr().out

    def test_empty_tenant(self, db_path):
        code = load_script("verify_evidence").main(["--tenant", "tenant-z", "--db-path", db_path])
        assert code == 0
