"""
Evidence kernel HTTP application.
"""

from typing import Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from util.logging import logger

from ..core.config import VERSION, debug_enabled
from ..core.db import health_check
from ..core.errors import KernelError
from ..core.kernel import Kernel
from .deps import CORRELATION_HEADER, RequestContext, correlation_id_for, get_kernel, get_request_context
from .drafts import router as drafts_router
from .evidence import router as evidence_router
from .schemas import HealthResponse

# Initialize the FastAPI application
app = FastAPI(
    title="Evidence Ingestion Kernel API",
    version=VERSION,
    description="Tenant-isolated drafts, sealed evidence, idempotent ingestion and audit trail",
    docs_url="/docs" if debug_enabled() else None,
    redoc_url="/redoc" if debug_enabled() else None
)


@app.middleware("http")
async def correlation_id_middleware(request: Request, call_next):
    """Honour or mint a correlation id and echo it on every response."""
    cid = correlation_id_for(request)
    response = await call_next(request)
    response.headers[CORRELATION_HEADER] = cid
    return response


@app.exception_handler(KernelError)
async def kernel_error_handler(request: Request, exc: KernelError):
    """Render kernel errors as {error_code, message, correlation_id, ...}."""
    cid = correlation_id_for(request)
    content = exc.to_dict()
    content["correlation_id"] = cid
    headers = {CORRELATION_HEADER: cid}
    if exc.retryable:
        headers["Retry-After"] = "1"
    if exc.http_status >= 500:
        logger.error(f"Kernel error {exc.error_code}: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=content, headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies become field errors, never 5xx."""
    cid = correlation_id_for(request)
    field_errors = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", []) if part not in ("body", "query", "path", "header")]
        field_errors.append({
            "field": ".".join(loc) or "body",
            "code": "REQUIRED" if error.get("type") == "missing" else "INVALID_VALUE",
            "message": error.get("msg", "invalid value"),
        })
    return JSONResponse(
        status_code=422,
        content={
            "error_code": "VALIDATION_ERROR",
            "message": "Request validation failed",
            "field_errors": field_errors,
            "correlation_id": cid,
        },
        headers={CORRELATION_HEADER: cid},
    )


@app.get("/health", response_model=HealthResponse)
def health_check_endpoint(kernel: Kernel = Depends(get_kernel)):
    """Check system health."""
    db_health = health_check(kernel.db_path)

    return HealthResponse(
        status="healthy" if db_health else "unhealthy",
        version=VERSION,
        db_health=db_health
    )


@app.get("/audit")
def list_audit_events(subject_id: Optional[str] = None, limit: int = Query(100, ge=1, le=1000),
                      ctx: RequestContext = Depends(get_request_context), kernel: Kernel = Depends(get_kernel)):
    """The caller's own tenant trail, newest first."""
    events = kernel.audit.list_events(ctx.tenant_id, subject_id=subject_id, limit=limit)
    return {"events": [e.to_dict() for e in events], "correlation_id": ctx.correlation_id}


app.include_router(drafts_router, prefix="/drafts", tags=["drafts"])
app.include_router(evidence_router, prefix="/evidence", tags=["evidence"])


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle all unhandled exceptions."""
    logger.error(f"Unhandled exception: {exc}")
    cid = correlation_id_for(request)
    content = {"error_code": "INTERNAL_ERROR", "message": "Internal server error", "correlation_id": cid}
    if debug_enabled():
        content["debug"] = str(exc)
    return JSONResponse(status_code=500, content=content, headers={CORRELATION_HEADER: cid})
