"""Manual-sale redemption endpoint."""

from fastapi import APIRouter, BackgroundTasks, Depends, Request

from evidence_vault.core.context import AppContext, get_context
from evidence_vault.schemas.delivery import RedeemConfirmRequest, RedeemConfirmResponse
from evidence_vault.utils.http import client_ip

router: APIRouter = APIRouter()


@router.post("/confirm", response_model=RedeemConfirmResponse)
def confirm_redeem(
    payload: RedeemConfirmRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    context: AppContext = Depends(get_context),
) -> RedeemConfirmResponse:
    result = context.redemption.confirm(
        payload.token,
        terms_accepted=payload.terms_accepted,
        buyer_name=payload.buyer_name,
        ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
        defer=background_tasks.add_task,
    )
    return RedeemConfirmResponse.model_validate(result)
