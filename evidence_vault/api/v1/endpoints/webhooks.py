"""Payment-provider webhook endpoint."""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse
from starlette.concurrency import run_in_threadpool

from evidence_vault.core.context import AppContext, get_context

router: APIRouter = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/paypal", response_class=PlainTextResponse)
async def paypal_webhook(request: Request, context: AppContext = Depends(get_context)) -> PlainTextResponse:
    body = await request.body()
    headers = {key.lower(): value for key, value in request.headers.items()}
    outcome = await run_in_threadpool(context.ingester.ingest, body, headers)
    return PlainTextResponse(outcome.message, status_code=outcome.status_code)
