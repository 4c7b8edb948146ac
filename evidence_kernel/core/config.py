"""
Kernel configuration read from environment variables.
Values are read once at import; tests patch the module attributes.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Storage configuration
DB_PATH = os.getenv("DB_PATH", "./data/evidence.db")
BLOB_ROOT = os.getenv("BLOB_ROOT", "./data/blobs")
STORAGE_TIMEOUT_SEC = float(os.getenv("STORAGE_TIMEOUT_SEC", "5"))

# Debug flag exposes docs and exception detail
DEBUG = os.getenv("DEBUG", "false").lower() == "true"

# Draft validation limits
QUARANTINE_MAX_DAYS = int(os.getenv("QUARANTINE_MAX_DAYS", "90"))
RATIONALE_MIN_LENGTH = int(os.getenv("RATIONALE_MIN_LENGTH", "20"))
CUSTOM_RETENTION_MAX_DAYS = int(os.getenv("CUSTOM_RETENTION_MAX_DAYS", "3650"))

# Ingestion profile gate (external contract lookup) - default disabled
INGESTION_PROFILE_ENFORCED = os.getenv("INGESTION_PROFILE_ENFORCED", "false").lower() == "true"

# Caller authentication; unset means the host authenticates upstream
API_AUTH_TOKEN = os.getenv("API_AUTH_TOKEN")

# Seal signing
DEFAULT_SEAL_SIGNING_KEY = "dev-only-seal-signing-key"
SEAL_SIGNING_KEY = os.getenv("SEAL_SIGNING_KEY", DEFAULT_SEAL_SIGNING_KEY)

AUDIT_LOG_LEVEL = os.getenv("AUDIT_LOG_LEVEL", "standard")  # standard|verbose

# Version string
VERSION = "1.0.0"


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "false").lower() == "true"


def ensure_db_directory(db_path: str = None):
    """Ensure the database directory exists."""
    Path(db_path or DB_PATH).parent.mkdir(parents=True, exist_ok=True)


def get_seal_signing_key() -> bytes:
    """Get the HMAC key used to sign sealed evidence."""
    return SEAL_SIGNING_KEY.encode("utf-8")


def is_profile_enforcement_enabled():
    """Check if an ACTIVE ingestion profile is required before ingesting."""
    return INGESTION_PROFILE_ENFORCED


def validate_config():
    """Validate kernel configuration and return any issues."""
    issues = []

    if STORAGE_TIMEOUT_SEC <= 0:
        issues.append("STORAGE_TIMEOUT_SEC must be > 0")

    if QUARANTINE_MAX_DAYS < 1:
        issues.append("QUARANTINE_MAX_DAYS must be >= 1")

    if RATIONALE_MIN_LENGTH < 1:
        issues.append("RATIONALE_MIN_LENGTH must be >= 1")

    if CUSTOM_RETENTION_MAX_DAYS < 1:
        issues.append("CUSTOM_RETENTION_MAX_DAYS must be >= 1")

    if AUDIT_LOG_LEVEL not in ["standard", "verbose"]:
        issues.append(f"Invalid AUDIT_LOG_LEVEL: {AUDIT_LOG_LEVEL}")

    if SEAL_SIGNING_KEY == DEFAULT_SEAL_SIGNING_KEY and not DEBUG:
        issues.append("SEAL_SIGNING_KEY is the development default")

    return issues
