"""Evidence ingestion kernel: drafts, sealing, idempotency and audit trail."""

__version__ = "1.0.0"
