#!/usr/bin/env python3
"""
Re-verify sealed evidence for a tenant: metadata hash, payload hash or merkle root,
attachment bytes, retention date and seal signature.

Exit code 0 when every record verifies, 1 when any record fails.
"""

import argparse
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from evidence_kernel.core import config
from evidence_kernel.core.dao import EvidenceRepository
from evidence_kernel.core.errors import KernelError
from evidence_kernel.core.kernel import build_kernel


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Verify sealed evidence integrity")
    parser.add_argument("--tenant", required=True, help="Tenant id")
    parser.add_argument("--evidence-id", action="append", default=[], help="Limit to these records")
    parser.add_argument("--db-path", default=None)
    parser.add_argument("--blob-root", default=None)
    args = parser.parse_args(argv)

    db_path = args.db_path or config.DB_PATH
    kernel = build_kernel(db_path=db_path, blob_root=args.blob_root)
    evidence_ids = args.evidence_id or EvidenceRepository(db_path).list_ids(args.tenant)

    if not evidence_ids:
        print(f"📋 No sealed evidence for tenant {args.tenant}")
        return 0

    failures = 0
    for evidence_id in evidence_ids:
        try:
            report = kernel.sealing.verify_evidence(args.tenant, evidence_id)
        except KernelError as e:
            print(f"❌ {evidence_id}: {e.error_code} {e.message}")
            failures += 1
            continue

        if report.valid:
            print(f"✅ {evidence_id}")
        else:
            failed = ", ".join(name for name, ok in report.checks.items() if not ok)
            print(f"❌ {evidence_id}: failed {failed}")
            failures += 1

    print(f"🔍 Verified {len(evidence_ids)} record(s), {failures} failure(s)")
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
