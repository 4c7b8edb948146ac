"""
Canonical hashing for payloads, metadata and attachment sets.
Two independent computations over the same logical data must produce identical hex digests.
"""

import hashlib
import json
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Iterable, List

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac


def hash_bytes(blob: bytes) -> str:
    """SHA-256 of raw bytes as lowercase hex."""
    if isinstance(blob, str):
        raise TypeError("hash_bytes expects bytes; encode text explicitly")
    return hashlib.sha256(blob).hexdigest()


def _normalize(value: Any) -> Any:
    """Reduce a value to plain JSON types with a stable ordering."""
    if isinstance(value, Enum):
        return _normalize(value.value)
    if isinstance(value, dict):
        return {str(k.value if isinstance(k, Enum) else k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    if isinstance(value, (set, frozenset)):
        items = [_normalize(v) for v in value]
        return sorted(items, key=lambda item: json.dumps(item, sort_keys=True, separators=(",", ":")))
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return value


def canonical_json(obj: Any) -> str:
    """Serialize with recursively sorted keys and compact separators."""
    return json.dumps(
        _normalize(obj),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def hash_canonical_json(obj: Any) -> str:
    """Hash of the canonical JSON form of obj."""
    return hash_bytes(canonical_json(obj).encode("utf-8"))


def merkle_root(hashes_in: Iterable[str]) -> str:
    """
    Merkle root over hex leaf hashes.

    Leaves are sorted first so input order never matters. Each level hashes the
    concatenation of adjacent pairs; an odd level duplicates its last node.
    """
    level: List[str] = sorted(h.lower() for h in hashes_in)
    if not level:
        raise ValueError("merkle_root requires at least one leaf hash")

    while len(level) > 1:
        if len(level) % 2 == 1:
            level.append(level[-1])
        level = [
            hash_bytes((level[i] + level[i + 1]).encode("ascii"))
            for i in range(0, len(level), 2)
        ]
    return level[0]


def _seal_message(evidence_id: str, payload_hash: str, metadata_hash: str, sealed_at: str) -> bytes:
    return "|".join([evidence_id, payload_hash, metadata_hash, sealed_at]).encode("utf-8")


def sign_seal(key: bytes, evidence_id: str, payload_hash: str, metadata_hash: str, sealed_at: str) -> str:
    """HMAC-SHA256 over the sealed tuple."""
    h = hmac.HMAC(key, hashes.SHA256())
    h.update(_seal_message(evidence_id, payload_hash, metadata_hash, sealed_at))
    return h.finalize().hex()


def verify_seal(key: bytes, signature: str, evidence_id: str, payload_hash: str, metadata_hash: str,
                sealed_at: str) -> bool:
    """Constant-time check of a seal signature."""
    try:
        expected = bytes.fromhex(signature)
    except (TypeError, ValueError):
        return False

    h = hmac.HMAC(key, hashes.SHA256())
    h.update(_seal_message(evidence_id, payload_hash, metadata_hash, sealed_at))
    try:
        h.verify(expected)
    except InvalidSignature:
        return False
    return True
