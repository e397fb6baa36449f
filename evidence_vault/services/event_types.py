"""Closed vocabulary of ledger event types and their payload schemas.

Known event types are validated strictly (unknown keys rejected); any
other type is accepted as a free-form mapping so older or newer producers
can still append to a chain.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from evidence_vault.services.errors import ValidationFailed


class EventPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")


class OrderCreated(EventPayload):
    order_number: str
    source: str
    product_slug: str
    product_name: str
    amount: str
    currency: str
    payment_method: str | None = None
    payment_ref: str | None = None
    manual_sale_id: str | None = None
    buyer_name: str | None = None
    buyer_country: str | None = None
    buyer_city: str | None = None


class TermsAccepted(EventPayload):
    terms_version_id: int
    terms_version_label: str
    terms_content_hash: str


class PaymentRecorded(EventPayload):
    method: str
    amount: str
    currency: str
    payment_ref: str | None = None
    manual_sale_id: str | None = None


class PaymentCaptured(EventPayload):
    capture_id: str
    source: str
    amount: str | None = None
    currency: str | None = None


class PaymentRefunded(EventPayload):
    provider_event_id: str
    refund_id: str | None = None
    previous_status: str


class WebhookPaymentConfirmed(EventPayload):
    capture_id: str
    provider_event_id: str
    source: str
    previous_status: str


class DisputeCreated(EventPayload):
    provider_event_id: str
    previous_status: str
    dispute_id: str | None = None
    reason: str | None = None


class LicenseCreated(EventPayload):
    license_key: str
    fingerprint: str


class TokenGenerated(EventPayload):
    token_hash_prefix: str
    expires_at: str
    source: str
    stage_id: str | None = None


class DownloadCompleted(EventPayload):
    token_hash_prefix: str
    result: str
    filename: str
    storage_key: str
    stage_id: str | None = None
    content_length: int | None = None
    range_requested: str | None = None


class DownloadDenied(EventPayload):
    result: str
    token_hash_prefix: str | None = None
    source: str | None = None
    stage_id: str | None = None
    download_count: int | None = None
    download_limit: int | None = None
    storage_key: str | None = None


class StageReleased(EventPayload):
    stage_id: str
    stage_type: str
    stage_order: int
    released_by: str
    token_hash_prefix: str
    filename: str | None = None
    sha256_hash: str | None = None


class DownloadsRevoked(EventPayload):
    reason: str
    revoked_by: str
    previous_status: str | None = None
    note: str | None = None


class StagesRevoked(EventPayload):
    revoked_count: int
    revoked_by: str
    reason: str


class DisputeModeActivated(EventPayload):
    activated_by: str
    previous_status: str
    frozen_at: str
    retention_expires_at: str
    chain_valid: bool
    chain_total_events: int


class EvidencePdfGenerated(EventPayload):
    document_id: str
    storage_key: str
    pdf_hash: str
    pdf_size_bytes: int
    chain_valid: bool
    generated_by: str


class EvidenceAttached(EventPayload):
    attachment_id: int
    attachment_type: str
    filename: str
    sha256_hash: str
    file_size: int
    uploaded_by: str


class EmailSent(EventPayload):
    template: str
    to: str
    message_id: str
    stage_id: str | None = None


class EmailFailed(EventPayload):
    template: str
    to: str
    error: str


class RedeemCompleted(EventPayload):
    manual_sale_id: str
    redeem_count: int


class ChainRepair(EventPayload):
    sequence_number: int
    previous_event_hash: str
    new_event_hash: str
    previous_prev_hash: str


class LedgerResealed(EventPayload):
    resealed_by: str
    resealed_count: int
    total_events: int
    repairs: list[ChainRepair]


EVENT_PAYLOADS: dict[str, type[EventPayload]] = {
    "order.created": OrderCreated,
    "terms.accepted": TermsAccepted,
    "payment.recorded": PaymentRecorded,
    "payment.captured": PaymentCaptured,
    "payment.refunded": PaymentRefunded,
    "webhook.payment_confirmed": WebhookPaymentConfirmed,
    "dispute.created": DisputeCreated,
    "license.created": LicenseCreated,
    "download.token_generated": TokenGenerated,
    "download.completed": DownloadCompleted,
    "download.denied": DownloadDenied,
    "download.denied_frozen": DownloadDenied,
    "admin.stage_released": StageReleased,
    "admin.downloads_revoked": DownloadsRevoked,
    "admin.stages_revoked": StagesRevoked,
    "admin.dispute_mode_activated": DisputeModeActivated,
    "admin.evidence_pdf_generated": EvidencePdfGenerated,
    "admin.evidence_attached": EvidenceAttached,
    "email.sent": EmailSent,
    "email.failed": EmailFailed,
    "redeem.completed": RedeemCompleted,
    "ledger.resealed": LedgerResealed,
}


def validate_event_payload(event_type: str, payload: dict[str, Any]) -> dict[str, Any]:
    """Return the payload as it will be stored and hashed."""
    schema = EVENT_PAYLOADS.get(event_type)
    if schema is None:
        return dict(payload)
    try:
        model = schema.model_validate(payload)
    except ValidationError as exc:
        raise ValidationFailed("INVALID_EVENT_PAYLOAD", f"Invalid payload for {event_type}: {exc}") from exc
    return model.model_dump(mode="json", exclude_none=True)
