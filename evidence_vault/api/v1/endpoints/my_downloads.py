"""Buyer self-service: request a fresh download link."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from evidence_vault.core.context import AppContext, get_context
from evidence_vault.db.session import get_db
from evidence_vault.models import Order
from evidence_vault.schemas.delivery import NewTokenRequest, NewTokenResponse
from evidence_vault.services.errors import NotFound
from evidence_vault.utils.http import client_ip

router: APIRouter = APIRouter()


@router.post("/new-token", response_model=NewTokenResponse)
def new_token(
    payload: NewTokenRequest,
    request: Request,
    db: Session = Depends(get_db),
    context: AppContext = Depends(get_context),
) -> NewTokenResponse:
    order = db.get(Order, payload.order_id)
    # Unknown order and wrong email look the same to the caller.
    if order is None or order.buyer_email.lower() != payload.email.strip().lower():
        raise NotFound("ORDER_NOT_FOUND", "Order not found")
    db.close()

    issued, url = context.delivery.issue_download_token(
        payload.order_id,
        stage_id=payload.stage_id,
        source="my-downloads",
        ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return NewTokenResponse(download_url=url, expires_at=issued.expires_at)
