"""Compiled dispute evidence report."""

from datetime import datetime
from typing import Any

from evidence_vault.schemas.common import CamelModel


class OrderSection(CamelModel):
    order_id: str
    order_number: str
    status: str
    payment_status: str
    amount: str
    currency: str
    created_at: datetime
    product_name: str
    product_slug: str
    download_count: int
    download_limit: int
    downloads_expire_at: datetime | None = None
    downloads_revoked: bool
    evidence_frozen_at: datetime | None = None
    evidence_frozen_by: str | None = None
    retention_expires_at: datetime | None = None


class BuyerSection(CamelModel):
    name: str | None = None
    email: str
    ip_masked: str | None = None
    country: str | None = None
    city: str | None = None
    user_agent: str | None = None


class PaymentSection(CamelModel):
    provider_order_id: str | None = None
    provider_capture_id: str | None = None
    provider_webhook_received_at: datetime | None = None
    events: list["TimelineEntry"] = []


class TermsSection(CamelModel):
    version_label: str | None = None
    content_hash: str | None = None
    accepted_at: datetime | None = None
    accepted_ip_masked: str | None = None
    accepted_user_agent: str | None = None


class LicenseSection(CamelModel):
    license_key: str
    fingerprint: str
    status: str
    created_at: datetime


class TokenEntry(CamelModel):
    token_hash_prefix: str
    source: str
    stage_id: str | None = None
    created_at: datetime
    expires_at: datetime
    used: bool
    used_at: datetime | None = None


class StageEntry(CamelModel):
    stage_id: str
    stage_order: int
    stage_type: str
    status: str
    filename: str | None = None
    sha256_hash: str | None = None
    download_count: int
    download_limit: int
    released_at: datetime | None = None
    released_by: str | None = None


class TimelineEntry(CamelModel):
    sequence_number: int
    event_type: str
    created_at: datetime
    event_data: dict[str, Any]
    ip_masked: str | None = None
    user_agent: str | None = None
    external_ref: str | None = None
    event_hash: str
    prev_hash: str


class AccessSummary(CamelModel):
    successful_downloads: int
    resumed_transfers: int
    denied_attempts: int
    first_download_at: datetime | None = None
    last_download_at: datetime | None = None
    distinct_ips: int
    bytes_delivered: int


class SnapshotEntry(CamelModel):
    snapshot_type: str
    snapshot_hash: str
    created_at: datetime


class AttachmentEntry(CamelModel):
    attachment_type: str
    filename: str
    description: str | None = None
    sha256_hash: str
    file_size: int
    uploaded_by: str
    created_at: datetime


class ChainSection(CamelModel):
    valid: bool
    total_events: int
    broken_at_sequence: int | None = None
    expected_hash: str | None = None
    actual_hash: str | None = None
    detail: str | None = None
    first_event_at: datetime | None = None
    last_event_at: datetime | None = None


class EvidenceReport(CamelModel):
    document_id: str
    generated_at: datetime
    generated_by: str
    store_name: str
    legal_entity: str | None = None
    order: OrderSection
    buyer: BuyerSection
    payment: PaymentSection
    terms: TermsSection
    license: LicenseSection | None = None
    downloads: list[TimelineEntry]
    access: AccessSummary
    tokens: list[TokenEntry]
    stages: list[StageEntry]
    emails: list[TimelineEntry]
    admin_actions: list[TimelineEntry]
    snapshots: list[SnapshotEntry]
    attachments: list[AttachmentEntry]
    chain: ChainSection
    timeline: list[TimelineEntry]


PaymentSection.model_rebuild()
