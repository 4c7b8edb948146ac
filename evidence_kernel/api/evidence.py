"""
Sealed evidence endpoints: read, verify and move through the state machine.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends

from ..core.kernel import Kernel
from .deps import RequestContext, get_kernel, get_request_context
from .schemas import TransitionRequest

router = APIRouter()


@router.get("/{evidence_id}")
def get_evidence(evidence_id: str, ctx: RequestContext = Depends(get_request_context),
                 kernel: Kernel = Depends(get_kernel)):
    evidence = kernel.sealing.get_evidence(ctx.tenant_id, evidence_id)
    result = evidence.to_dict()
    result["correlation_id"] = ctx.correlation_id
    return result


@router.patch("/{evidence_id}")
def update_evidence(evidence_id: str, body: Optional[Dict[str, Any]] = Body(None),
                    ctx: RequestContext = Depends(get_request_context), kernel: Kernel = Depends(get_kernel)):
    """Sealed evidence never changes. Every attempt is refused with 409 and audited."""
    kernel.state_machine.reject_mutation(ctx.tenant_id, evidence_id, ctx.actor, ctx.correlation_id,
                                         sorted((body or {}).keys()))


@router.get("/{evidence_id}/verify")
def verify_evidence(evidence_id: str, ctx: RequestContext = Depends(get_request_context),
                    kernel: Kernel = Depends(get_kernel)):
    report = kernel.sealing.verify_evidence(ctx.tenant_id, evidence_id)
    result = report.to_dict()
    result["correlation_id"] = ctx.correlation_id
    return result


@router.post("/{evidence_id}/transition")
def transition_evidence(evidence_id: str, body: TransitionRequest,
                        ctx: RequestContext = Depends(get_request_context), kernel: Kernel = Depends(get_kernel)):
    """Apply one state transition. Illegal moves return 400 with the allowed targets."""
    result = kernel.state_machine.transition(
        ctx.tenant_id, evidence_id, body.from_state, body.to_state, body.reason, ctx.actor, ctx.correlation_id,
        flow=body.flow,
    ).to_dict()
    result["correlation_id"] = ctx.correlation_id
    return result
