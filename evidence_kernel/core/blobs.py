"""
Blob storage for attachment bytes.
Content addressed and partitioned by tenant; the kernel only ever reads back by reference.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict

from .hashing import hash_bytes
from .tenancy import require_tenant


class IBlobStore(ABC):
    """Abstract interface for attachment byte storage."""

    @abstractmethod
    def put(self, tenant_id: str, blob: bytes) -> str:
        """Store bytes and return a storage reference."""
        pass

    @abstractmethod
    def get(self, tenant_id: str, storage_ref: str) -> bytes:
        """Read bytes back by reference. Raises KeyError if absent."""
        pass

    @abstractmethod
    def exists(self, tenant_id: str, storage_ref: str) -> bool:
        pass


class InMemoryBlobStore(IBlobStore):
    """Dict-backed store for tests."""

    def __init__(self):
        self._blobs: Dict[str, bytes] = {}

    def put(self, tenant_id: str, blob: bytes) -> str:
        ref = f"{require_tenant(tenant_id)}/{hash_bytes(blob)}"
        self._blobs[ref] = bytes(blob)
        return ref

    def get(self, tenant_id: str, storage_ref: str) -> bytes:
        if not storage_ref.startswith(f"{require_tenant(tenant_id)}/"):
            raise KeyError(storage_ref)
        return self._blobs[storage_ref]

    def exists(self, tenant_id: str, storage_ref: str) -> bool:
        try:
            self.get(tenant_id, storage_ref)
        except KeyError:
            return False
        return True


class FilesystemBlobStore(IBlobStore):
    """Files under <root>/<tenant>/<hh>/<sha256>; identical content is stored once."""

    def __init__(self, root: str):
        self.root = Path(root)

    def _path(self, tenant_id: str, storage_ref: str) -> Path:
        tenant_id = require_tenant(tenant_id)
        tenant, _, digest = storage_ref.partition("/")
        if tenant != tenant_id or not digest or not all(ch in "0123456789abcdef" for ch in digest):
            raise KeyError(storage_ref)
        return self.root / tenant / digest[:2] / digest

    def put(self, tenant_id: str, blob: bytes) -> str:
        ref = f"{require_tenant(tenant_id)}/{hash_bytes(blob)}"
        path = self._path(tenant_id, ref)
        if not path.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            tmp.write_bytes(blob)
            tmp.replace(path)
        return ref

    def get(self, tenant_id: str, storage_ref: str) -> bytes:
        path = self._path(tenant_id, storage_ref)
        if not path.exists():
            raise KeyError(storage_ref)
        return path.read_bytes()

    def exists(self, tenant_id: str, storage_ref: str) -> bool:
        try:
            return self._path(tenant_id, storage_ref).exists()
        except KeyError:
            return False
