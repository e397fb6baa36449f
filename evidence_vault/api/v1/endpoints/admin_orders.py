"""Operator endpoints acting on a single order."""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, UploadFile, status
from fastapi.responses import Response
from sqlalchemy.orm import Session

from evidence_vault.core.context import AppContext, get_context
from evidence_vault.core.security import require_admin, require_super_admin
from evidence_vault.db.session import get_db
from evidence_vault.models import Order, User
from evidence_vault.schemas.delivery import (
    AttachmentResponse,
    ChainVerifyResponse,
    DisputeModeResponse,
    ResealResponse,
    RevokeRequest,
    RevokeResponse,
    StageReleaseResponse,
)
from evidence_vault.schemas.evidence import EvidenceReport
from evidence_vault.services.audit_service import record_action
from evidence_vault.services.errors import NotFound, StateConflict
from evidence_vault.services.evidence_attachments import MAX_ATTACHMENT_BYTES
from evidence_vault.services.evidence_report import render_evidence_pdf
from evidence_vault.utils.time import is_past

router: APIRouter = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/{order_id}/verify-chain", response_model=ChainVerifyResponse)
def verify_chain(
    order_id: str,
    context: AppContext = Depends(get_context),
    _: User = Depends(require_admin),
) -> ChainVerifyResponse:
    _ensure_order(context, order_id)
    result = context.ledger.verify(order_id)
    return ChainVerifyResponse.model_validate(result)


@router.post("/{order_id}/reseal-chain", response_model=ResealResponse)
def reseal_chain(
    order_id: str,
    context: AppContext = Depends(get_context),
    user: User = Depends(require_super_admin),
) -> ResealResponse:
    _ensure_order(context, order_id)
    before = context.ledger.verify(order_id)
    result = context.ledger.reseal(order_id, actor=user.identifier)
    after = context.ledger.verify(order_id)
    record_action(
        context.session_factory,
        actor=user,
        action_type="ledger_reseal",
        order_id=order_id,
        before_snapshot={"valid": before.valid, "broken_at_sequence": before.broken_at_sequence},
        after_snapshot={"valid": after.valid, "resealed": result.resealed},
    )
    return ResealResponse(resealed=result.resealed, total_events=result.total_events, chain_valid_after=after.valid)


@router.post("/{order_id}/stages/{stage_id}/release", response_model=StageReleaseResponse)
def release_stage(
    order_id: str,
    stage_id: str,
    background_tasks: BackgroundTasks,
    context: AppContext = Depends(get_context),
    user: User = Depends(require_admin),
) -> StageReleaseResponse:
    release = context.delivery.release_stage(order_id, stage_id, actor=user.identifier, defer=background_tasks.add_task)
    record_action(
        context.session_factory,
        actor=user,
        action_type="stage_release",
        order_id=order_id,
        before_snapshot={"stage_id": stage_id, "status": "pending"},
        after_snapshot={"stage_id": stage_id, "status": "ready"},
    )
    return StageReleaseResponse.model_validate(release)


@router.post("/{order_id}/revoke", response_model=RevokeResponse)
def revoke_downloads(
    order_id: str,
    payload: RevokeRequest | None = None,
    context: AppContext = Depends(get_context),
    user: User = Depends(require_admin),
) -> RevokeResponse:
    reason = payload.reason if payload else "admin_revocation"
    result = context.delivery.revoke_downloads(order_id, actor=user.identifier, reason=reason)
    record_action(
        context.session_factory,
        actor=user,
        action_type="downloads_revoke",
        order_id=order_id,
        before_snapshot={"downloads_revoked": False},
        after_snapshot={"downloads_revoked": True, "stages_revoked": result.stages_revoked, "reason": reason},
    )
    return RevokeResponse.model_validate(result)


@router.post("/{order_id}/dispute-mode", response_model=DisputeModeResponse)
def activate_dispute_mode(
    order_id: str,
    context: AppContext = Depends(get_context),
    user: User = Depends(require_admin),
) -> DisputeModeResponse:
    result = context.dispute.activate(order_id, actor=user.identifier)
    record_action(
        context.session_factory,
        actor=user,
        action_type="dispute_mode",
        order_id=order_id,
        before_snapshot={"status": result.freeze.previous_status},
        after_snapshot={"status": "frozen", "evidence_pdf_hash": result.pdf_hash},
    )
    return DisputeModeResponse(
        order_number=result.freeze.order_number,
        frozen_at=result.freeze.frozen_at,
        retention_expires_at=result.freeze.retention_expires_at,
        chain_valid=result.chain_valid,
        evidence_pdf_key=result.pdf_key,
        evidence_pdf_hash=result.pdf_hash,
    )


@router.post(
    "/{order_id}/evidence-attachments",
    response_model=AttachmentResponse,
    status_code=status.HTTP_201_CREATED,
)
def upload_evidence_attachment(
    order_id: str,
    file: UploadFile = File(...),
    description: str | None = Form(default=None),
    attachment_type: str = Form(default="other", alias="type"),
    context: AppContext = Depends(get_context),
    user: User = Depends(require_admin),
) -> AttachmentResponse:
    # Read one byte past the limit so oversize uploads are detected without buffering them whole.
    data = file.file.read(MAX_ATTACHMENT_BYTES + 1)
    stored = context.attachments.attach(
        order_id,
        data=data,
        filename=file.filename or "attachment",
        mime_type=file.content_type or "application/octet-stream",
        uploaded_by=user.identifier,
        attachment_type=attachment_type,
        description=description,
    )
    record_action(
        context.session_factory,
        actor=user,
        action_type="evidence_attach",
        order_id=order_id,
        after_snapshot={"attachment_id": stored.id, "sha256_hash": stored.sha256_hash},
    )
    return AttachmentResponse.model_validate(stored)


@router.get("/{order_id}/evidence", response_model=EvidenceReport)
def evidence_report(
    order_id: str,
    context: AppContext = Depends(get_context),
    user: User = Depends(require_admin),
) -> EvidenceReport:
    return context.compiler.compile(order_id, generated_by=user.identifier)


@router.get("/{order_id}/evidence.pdf")
def evidence_report_pdf(
    order_id: str,
    context: AppContext = Depends(get_context),
    user: User = Depends(require_admin),
) -> Response:
    report = context.compiler.compile(order_id, generated_by=user.identifier)
    pdf = render_evidence_pdf(report)
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{report.document_id}.pdf"'},
    )


@router.delete("/{order_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_order(
    order_id: str,
    db: Session = Depends(get_db),
    context: AppContext = Depends(get_context),
    user: User = Depends(require_super_admin),
) -> Response:
    order = db.get(Order, order_id)
    if order is None:
        raise NotFound("ORDER_NOT_FOUND", "Order not found")
    if order.evidence_frozen_at is not None and not is_past(order.retention_expires_at):
        raise StateConflict("RETENTION_ACTIVE", "Frozen evidence is still under retention")

    stored_keys = [key for key in [order.frozen_evidence_pdf_key, *(a.storage_key for a in order.attachments)] if key]
    before = {"order_number": order.order_number, "status": order.status, "buyer_email": order.buyer_email}
    db.delete(order)
    db.commit()
    for key in stored_keys:
        context.file_store.delete(key)

    logger.warning("[ADMIN] Order %s hard-deleted by %s", before["order_number"], user.identifier)
    record_action(context.session_factory, actor=user, action_type="order_delete", order_id=order_id, before_snapshot=before)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


def _ensure_order(context: AppContext, order_id: str) -> None:
    with context.session_factory() as db:
        if db.get(Order, order_id) is None:
            raise NotFound("ORDER_NOT_FOUND", "Order not found")
