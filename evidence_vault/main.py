"""FastAPI entrypoint for the digital-goods evidence and delivery service."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from evidence_vault.api.v1.api import api_router
from evidence_vault.api.v1.endpoints import download
from evidence_vault.core.config import settings
from evidence_vault.core.context import build_context
from evidence_vault.db import session as db_session
from evidence_vault.db.base import Base
from evidence_vault.services.account_service import ensure_default_admin
from evidence_vault.services.errors import DeliveryError

logger = logging.getLogger(__name__)

app = FastAPI(title="Evidence Vault")
app.include_router(api_router, prefix="/api/v1")
app.include_router(download.router, prefix="/download", tags=["downloads"])


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


@app.on_event("startup")
def startup() -> None:
    configure_logging()
    Base.metadata.create_all(bind=db_session.engine)
    app.state.context = build_context(db_session.SessionLocal, settings)
    with db_session.SessionLocal() as session:
        try:
            admin_present = ensure_default_admin(session, settings)
            logger.info("[BOOTSTRAP] configured admin present before startup: %s", "yes" if admin_present else "no")
        except Exception:
            logger.exception("[BOOTSTRAP] Admin bootstrap failed; continuing startup.")


@app.exception_handler(DeliveryError)
def delivery_error_handler(request: Request, exc: DeliveryError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("[API] %s %s failed: %s", request.method, request.url.path, exc.code)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}
