#!/usr/bin/env python3
"""
Create the evidence kernel schema: tables, idempotency index and append-only triggers.

Safe to run repeatedly; every statement is IF NOT EXISTS.
"""

import argparse
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from evidence_kernel.core import config
from evidence_kernel.core.db import health_check, init_db


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Initialise the evidence kernel database")
    parser.add_argument("--db-path", default=None, help=f"SQLite file (default: {config.DB_PATH})")
    args = parser.parse_args(argv)

    db_path = args.db_path or config.DB_PATH
    print(f"🚀 Initialising evidence database at {db_path}")

    for issue in config.validate_config():
        print(f"⚠️  Config: {issue}")

    init_db(db_path)
    if not health_check(db_path):
        print("❌ Schema check failed after initialisation")
        return 1

    print("✅ Database ready")
    return 0


if __name__ == "__main__":
    sys.exit(main())
