"""Operator endpoint recording manual (off-checkout) sales."""

from fastapi import APIRouter, Depends, status

from evidence_vault.core.context import AppContext, get_context
from evidence_vault.core.security import require_admin
from evidence_vault.models import User
from evidence_vault.schemas.delivery import ManualSaleCreate, ManualSaleCreated
from evidence_vault.services.audit_service import record_action

router: APIRouter = APIRouter()


@router.post("", response_model=ManualSaleCreated, status_code=status.HTTP_201_CREATED)
def create_manual_sale(
    payload: ManualSaleCreate,
    context: AppContext = Depends(get_context),
    user: User = Depends(require_admin),
) -> ManualSaleCreated:
    created = context.redemption.create_manual_sale(
        product_id=payload.product_id,
        buyer_email=payload.buyer_email,
        buyer_name=payload.buyer_name,
        amount=payload.amount,
        currency=payload.currency,
        payment_method=payload.payment_method,
        payment_ref=payload.payment_ref,
        require_payment_first=payload.require_payment_first,
        redeem_expires_days=payload.redeem_expires_days,
        max_redeems=payload.max_redeems,
        created_by=user.identifier,
    )
    record_action(
        context.session_factory,
        actor=user,
        action_type="manual_sale_create",
        after_snapshot={"manual_sale_id": created.sale_id, "product_id": payload.product_id},
    )
    return ManualSaleCreated(id=created.sale_id, redeem_url=created.redeem_url, redeem_expires_at=created.redeem_expires_at)
