"""
Request-scoped dependencies: caller identity, correlation id and the kernel instance.
"""

import hmac
import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, Request

from ..core import config
from ..core.errors import UnauthenticatedError
from ..core.kernel import Kernel, build_kernel

CORRELATION_HEADER = "X-Correlation-Id"


@dataclass
class RequestContext:
    tenant_id: str
    actor: str
    correlation_id: str


def correlation_id_for(request: Request) -> str:
    """Correlation id set by the middleware, or the caller's header, or a fresh one."""
    cid = getattr(request.state, "correlation_id", None)
    if not cid:
        cid = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        request.state.correlation_id = cid
    return cid


def get_request_context(
    request: Request,
    x_tenant_id: Optional[str] = Header(None),
    x_actor_id: Optional[str] = Header(None),
    authorization: Optional[str] = Header(None),
) -> RequestContext:
    """Every kernel call needs an explicit tenant and actor."""
    if config.API_AUTH_TOKEN:
        scheme, _, token = (authorization or "").partition(" ")
        if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip(), config.API_AUTH_TOKEN):
            raise UnauthenticatedError("Missing or invalid bearer token")

    if not x_tenant_id or not x_tenant_id.strip():
        raise UnauthenticatedError("X-Tenant-Id header is required")
    if not x_actor_id or not x_actor_id.strip():
        raise UnauthenticatedError("X-Actor-Id header is required")

    return RequestContext(
        tenant_id=x_tenant_id.strip(),
        actor=x_actor_id.strip(),
        correlation_id=correlation_id_for(request),
    )


_kernel: Optional[Kernel] = None


def get_kernel() -> Kernel:
    """Lazy initialization of the kernel from configuration."""
    global _kernel
    if _kernel is None:
        _kernel = build_kernel()
    return _kernel
