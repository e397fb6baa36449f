"""Request and response bodies of the buyer-facing and operator delivery endpoints."""

from datetime import datetime
from decimal import Decimal

from pydantic import Field

from evidence_vault.schemas.common import CamelModel


class RedeemConfirmRequest(CamelModel):
    token: str = ""
    terms_accepted: bool = False
    buyer_name: str | None = None


class RedeemConfirmResponse(CamelModel):
    order_id: str
    order_number: str
    download_url: str
    license_key: str
    product_name: str
    expires_at: datetime
    download_limit: int


class NewTokenRequest(CamelModel):
    order_id: str
    email: str
    stage_id: str | None = None


class NewTokenResponse(CamelModel):
    download_url: str
    expires_at: datetime


class StageReleaseResponse(CamelModel):
    success: bool = True
    stage_id: str
    stage_type: str
    released_at: datetime
    download_url: str
    expires_at: datetime


class RevokeRequest(CamelModel):
    reason: str = "admin_revocation"


class RevokeResponse(CamelModel):
    success: bool = True
    order_number: str
    stages_revoked: int
    reason: str


class DisputeModeResponse(CamelModel):
    success: bool = True
    order_number: str
    frozen_at: datetime
    retention_expires_at: datetime
    chain_valid: bool
    evidence_pdf_key: str | None = None
    evidence_pdf_hash: str | None = None


class ChainVerifyResponse(CamelModel):
    valid: bool
    total_events: int
    broken_at_sequence: int | None = None
    expected_hash: str | None = None
    actual_hash: str | None = None
    detail: str | None = None
    first_event_at: datetime | None = None
    last_event_at: datetime | None = None


class ResealResponse(CamelModel):
    resealed: int
    total_events: int
    chain_valid_after: bool


class ManualSaleCreate(CamelModel):
    product_id: str
    buyer_email: str
    buyer_name: str | None = None
    amount: Decimal | None = Field(default=None, ge=0)
    currency: str = "USD"
    payment_method: str = "invoice"
    payment_ref: str | None = None
    require_payment_first: bool = False
    redeem_expires_days: int | None = Field(default=None, ge=1, le=365)
    max_redeems: int = Field(default=1, ge=1)


class ManualSaleCreated(CamelModel):
    id: str
    redeem_url: str
    redeem_expires_at: datetime


class AttachmentResponse(CamelModel):
    id: int
    attachment_type: str
    filename: str
    mime_type: str
    file_size: int
    sha256_hash: str
    uploaded_by: str
    created_at: datetime
