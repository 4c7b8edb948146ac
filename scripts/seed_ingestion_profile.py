#!/usr/bin/env python3
"""
Write an ingestion profile (contract) for a tenant and dataset type.

The kernel only reads profiles; this is the ops path that creates them.
"""

import argparse
import os
import sys
import uuid
from datetime import datetime

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from evidence_kernel.core import config
from evidence_kernel.core.dao import IngestionProfileRepository
from evidence_kernel.core.db import init_db
from evidence_kernel.core.schema import DatasetType, IngestionProfile


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Seed an ingestion profile")
    parser.add_argument("--tenant", required=True, help="Tenant id")
    parser.add_argument("--dataset-type", required=True, choices=[d.value for d in DatasetType])
    parser.add_argument("--entity-type", default="SUPPLIER")
    parser.add_argument("--ingestion-path", default="DIRECT")
    parser.add_argument("--authority-type", default="CONTRACT")
    parser.add_argument("--status", default="ACTIVE", choices=["ACTIVE", "EXPIRED"])
    parser.add_argument("--expires-at", default=None, help="ISO-8601 expiry, e.g. 2026-12-31T00:00:00+00:00")
    parser.add_argument("--profile-id", default=None)
    parser.add_argument("--db-path", default=None)
    args = parser.parse_args(argv)

    db_path = args.db_path or config.DB_PATH
    try:
        expires_at = datetime.fromisoformat(args.expires_at) if args.expires_at else None
    except ValueError:
        print(f"❌ Invalid --expires-at: {args.expires_at}")
        return 2

    init_db(db_path)
    profile = IngestionProfile(
        profile_id=args.profile_id or f"prof_{uuid.uuid4()}",
        tenant_id=args.tenant,
        dataset_type=DatasetType(args.dataset_type),
        entity_type=args.entity_type,
        ingestion_path=args.ingestion_path,
        authority_type=args.authority_type,
        status=args.status,
        expires_at=expires_at,
    )
    IngestionProfileRepository(db_path).upsert(profile)
    print(f"✅ Profile {profile.profile_id}: {profile.tenant_id}/{profile.dataset_type.value} {profile.status}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
