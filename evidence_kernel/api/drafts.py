"""
Draft endpoints: declare, amend, attach, inspect and seal.
"""

from fastapi import APIRouter, Depends, Request, Response

from ..core.kernel import Kernel
from .deps import RequestContext, get_kernel, get_request_context
from .schemas import (
    AttachmentRequest,
    DraftCreatedResponse,
    DraftDeclaration,
    DraftPatch,
    ErrorResponse,
    PayloadRequest,
    PayloadResponse,
)

router = APIRouter()


@router.post("", status_code=201, response_model=DraftCreatedResponse,
             responses={403: {"model": ErrorResponse}, 422: {"model": ErrorResponse}})
def create_draft(body: DraftDeclaration, ctx: RequestContext = Depends(get_request_context),
                 kernel: Kernel = Depends(get_kernel)):
    """Declare an intent to ingest. Returns 422 with every field error at once."""
    declaration = body.model_dump(exclude_none=True)
    draft = kernel.drafts.create_draft(ctx.tenant_id, ctx.actor, declaration, ctx.correlation_id)
    return DraftCreatedResponse(
        draft_id=draft.draft_id,
        status=draft.status.value,
        binding_context=draft.binding_context(),
        correlation_id=ctx.correlation_id,
    )


@router.get("/{draft_id}")
def get_draft(draft_id: str, ctx: RequestContext = Depends(get_request_context),
              kernel: Kernel = Depends(get_kernel)):
    draft = kernel.drafts.get_draft(ctx.tenant_id, draft_id)
    attachments = kernel.drafts.list_attachments(ctx.tenant_id, draft_id)
    body = draft.to_dict()
    body["attachments"] = [a.to_dict() for a in attachments]
    body["correlation_id"] = ctx.correlation_id
    return body


@router.patch("/{draft_id}")
def update_draft(draft_id: str, body: DraftPatch, ctx: RequestContext = Depends(get_request_context),
                 kernel: Kernel = Depends(get_kernel)):
    """Amend mutable fields. Binding fields and sealed drafts are refused."""
    patch = body.model_dump(exclude_unset=True)
    draft = kernel.drafts.update_mutable_fields(ctx.tenant_id, ctx.actor, draft_id, patch, ctx.correlation_id)
    result = draft.to_dict()
    result["correlation_id"] = ctx.correlation_id
    return result


@router.post("/{draft_id}/payload", response_model=PayloadResponse)
def attach_payload(draft_id: str, body: PayloadRequest, ctx: RequestContext = Depends(get_request_context),
                   kernel: Kernel = Depends(get_kernel)):
    _, payload_hash = kernel.drafts.attach_payload(ctx.tenant_id, ctx.actor, draft_id, body.payload,
                                                   ctx.correlation_id)
    return PayloadResponse(draft_id=draft_id, payload_hash=payload_hash, correlation_id=ctx.correlation_id)


@router.post("/{draft_id}/attachments", status_code=201)
def register_attachment(draft_id: str, body: AttachmentRequest,
                        ctx: RequestContext = Depends(get_request_context), kernel: Kernel = Depends(get_kernel)):
    attachment = kernel.drafts.register_attachment(
        ctx.tenant_id, ctx.actor, draft_id, body.filename, body.declared_size, body.declared_content_type,
        ctx.correlation_id, content_hash=body.content_hash,
    )
    result = attachment.to_dict()
    result["correlation_id"] = ctx.correlation_id
    return result


@router.put("/{draft_id}/attachments/{attachment_id}/content")
async def upload_attachment_content(draft_id: str, attachment_id: str, request: Request,
                                    ctx: RequestContext = Depends(get_request_context),
                                    kernel: Kernel = Depends(get_kernel)):
    """Raw request body is the file. The server computes and records its SHA-256."""
    content = await request.body()
    attachment = kernel.drafts.upload_attachment_content(ctx.tenant_id, ctx.actor, draft_id, attachment_id,
                                                         content, ctx.correlation_id)
    result = attachment.to_dict()
    result["correlation_id"] = ctx.correlation_id
    return result


@router.post("/{draft_id}/for-seal")
def prepare_for_seal(draft_id: str, ctx: RequestContext = Depends(get_request_context),
                     kernel: Kernel = Depends(get_kernel)):
    view = kernel.drafts.prepare_for_seal(ctx.tenant_id, draft_id)
    result = view.to_dict()
    result["correlation_id"] = ctx.correlation_id
    return result


@router.post("/{draft_id}/seal", status_code=201,
             responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 422: {"model": ErrorResponse},
                        503: {"model": ErrorResponse}})
def seal_draft(draft_id: str, response: Response, ctx: RequestContext = Depends(get_request_context),
               kernel: Kernel = Depends(get_kernel)):
    """
    Seal a draft into immutable evidence.

    201 for a new record; 200 with replayed=true when an identical submission
    under the same idempotency key already produced one.
    """
    outcome = kernel.sealing.seal(ctx.tenant_id, draft_id, ctx.actor, ctx.correlation_id)
    if outcome.replayed:
        response.status_code = 200
    result = outcome.to_dict()
    result["correlation_id"] = ctx.correlation_id
    return result
