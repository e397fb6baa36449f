"""Read-only compiler of dispute evidence, with a reportlab PDF rendering."""

from __future__ import annotations

import logging
import re
from io import BytesIO
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from evidence_vault.core.config import Settings, settings
from evidence_vault.models import DownloadToken, EvidenceAttachment, Order, OrderEvent, OrderSnapshot
from evidence_vault.schemas.evidence import (
    AccessSummary,
    AttachmentEntry,
    BuyerSection,
    ChainSection,
    EvidenceReport,
    LicenseSection,
    OrderSection,
    PaymentSection,
    SnapshotEntry,
    StageEntry,
    TermsSection,
    TimelineEntry,
    TokenEntry,
)
from evidence_vault.services.errors import NotFound
from evidence_vault.services.ledger import verify_events
from evidence_vault.services.settings_service import get_store_identity
from evidence_vault.services.tokens import HASH_PREFIX_LENGTH
from evidence_vault.utils.pdf_fonts import register_evidence_fonts
from evidence_vault.utils.time import as_utc, utc_now

logger = logging.getLogger(__name__)

HEX_DIGEST = re.compile(r"^[0-9a-f]{32,128}$")

PAYMENT_EVENT_PREFIXES = ("payment.", "webhook.", "dispute.")
DOWNLOAD_EVENT_PREFIX = "download."
EMAIL_EVENT_PREFIX = "email."
ADMIN_EVENT_PREFIXES = ("admin.", "ledger.")


def _optional_utc(value):
    return as_utc(value) if value is not None else None


def _timeline_entry(event: OrderEvent) -> TimelineEntry:
    return TimelineEntry(
        sequence_number=event.sequence_number,
        event_type=event.event_type,
        created_at=as_utc(event.created_at),
        event_data=event.event_data or {},
        ip_masked=event.ip_address,
        user_agent=event.user_agent,
        external_ref=event.external_ref,
        event_hash=event.event_hash,
        prev_hash=event.prev_hash,
    )


def summarize_access(events: list[OrderEvent]) -> AccessSummary:
    """Proof-of-access figures derived from download events."""
    completed = [event for event in events if event.event_type == "download.completed"]
    full = [event for event in completed if (event.event_data or {}).get("result") == "OK"]
    denied = [event for event in events if event.event_type in ("download.denied", "download.denied_frozen")]
    return AccessSummary(
        successful_downloads=len(full),
        resumed_transfers=len(completed) - len(full),
        denied_attempts=len(denied),
        first_download_at=as_utc(completed[0].created_at) if completed else None,
        last_download_at=as_utc(completed[-1].created_at) if completed else None,
        distinct_ips=len({event.ip_address for event in completed if event.ip_address}),
        bytes_delivered=sum(int((event.event_data or {}).get("content_length") or 0) for event in completed),
    )


class EvidenceReportCompiler:
    """Assembles ledger, snapshot and token history into one dispute document."""

    def __init__(self, session_factory: sessionmaker, settings: Settings) -> None:
        self._session_factory = session_factory
        self._settings = settings

    def compile(self, order_id: str, *, generated_by: str) -> EvidenceReport:
        generated_at = utc_now()
        with self._session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                raise NotFound("ORDER_NOT_FOUND", "Order not found")

            events = list(
                db.scalars(
                    select(OrderEvent).where(OrderEvent.order_id == order_id).order_by(OrderEvent.sequence_number)
                )
            )
            tokens = list(
                db.scalars(select(DownloadToken).where(DownloadToken.order_id == order_id).order_by(DownloadToken.created_at))
            )
            snapshots = list(
                db.scalars(select(OrderSnapshot).where(OrderSnapshot.order_id == order_id).order_by(OrderSnapshot.created_at))
            )
            attachments = list(
                db.scalars(
                    select(EvidenceAttachment)
                    .where(EvidenceAttachment.order_id == order_id)
                    .order_by(EvidenceAttachment.created_at)
                )
            )
            identity = get_store_identity(db, defaults=self._settings)
            chain = verify_events(events)
            timeline = [_timeline_entry(event) for event in events]
            terms = order.terms_version
            license_row = order.license

            report = EvidenceReport(
                document_id=f"EVD-{order.order_number}-{generated_at.strftime('%Y%m%d%H%M%S')}",
                generated_at=generated_at,
                generated_by=generated_by,
                store_name=identity.store_name,
                legal_entity=identity.legal_entity,
                order=OrderSection(
                    order_id=order.id,
                    order_number=order.order_number,
                    status=order.status,
                    payment_status=order.payment_status,
                    amount=str(order.amount),
                    currency=order.currency,
                    created_at=as_utc(order.created_at),
                    product_name=str(order.product_snapshot.get("name") or order.product.name),
                    product_slug=str(order.product_snapshot.get("slug") or order.product.slug),
                    download_count=order.download_count,
                    download_limit=order.download_limit,
                    downloads_expire_at=_optional_utc(order.downloads_expire_at),
                    downloads_revoked=order.downloads_revoked,
                    evidence_frozen_at=_optional_utc(order.evidence_frozen_at),
                    evidence_frozen_by=order.evidence_frozen_by,
                    retention_expires_at=_optional_utc(order.retention_expires_at),
                ),
                buyer=BuyerSection(
                    name=order.buyer_name,
                    email=order.buyer_email,
                    ip_masked=order.buyer_ip,
                    country=order.buyer_country,
                    city=order.buyer_city,
                    user_agent=order.buyer_user_agent,
                ),
                payment=PaymentSection(
                    provider_order_id=order.provider_order_id,
                    provider_capture_id=order.provider_capture_id,
                    provider_webhook_received_at=_optional_utc(order.provider_webhook_received_at),
                    events=[entry for entry in timeline if entry.event_type.startswith(PAYMENT_EVENT_PREFIXES)],
                ),
                terms=TermsSection(
                    version_label=terms.version_label if terms else None,
                    content_hash=terms.content_hash if terms else None,
                    accepted_at=_optional_utc(order.terms_accepted_at),
                    accepted_ip_masked=order.terms_accepted_ip,
                    accepted_user_agent=order.terms_accepted_ua,
                ),
                license=(
                    LicenseSection(
                        license_key=license_row.license_key,
                        fingerprint=license_row.fingerprint,
                        status=license_row.status,
                        created_at=as_utc(license_row.created_at),
                    )
                    if license_row
                    else None
                ),
                downloads=[entry for entry in timeline if entry.event_type.startswith(DOWNLOAD_EVENT_PREFIX)],
                access=summarize_access(events),
                tokens=[
                    TokenEntry(
                        token_hash_prefix=token.token_hash[:HASH_PREFIX_LENGTH],
                        source=token.source,
                        stage_id=token.stage_id,
                        created_at=as_utc(token.created_at),
                        expires_at=as_utc(token.expires_at),
                        used=token.used,
                        used_at=_optional_utc(token.used_at),
                    )
                    for token in tokens
                ],
                stages=[
                    StageEntry(
                        stage_id=stage.id,
                        stage_order=stage.stage_order,
                        stage_type=stage.stage_type,
                        status=stage.status,
                        filename=stage.filename,
                        sha256_hash=stage.sha256_hash,
                        download_count=stage.download_count,
                        download_limit=stage.download_limit,
                        released_at=_optional_utc(stage.released_at),
                        released_by=stage.released_by,
                    )
                    for stage in order.stages
                ],
                emails=[entry for entry in timeline if entry.event_type.startswith(EMAIL_EVENT_PREFIX)],
                admin_actions=[entry for entry in timeline if entry.event_type.startswith(ADMIN_EVENT_PREFIXES)],
                snapshots=[
                    SnapshotEntry(
                        snapshot_type=snapshot.snapshot_type,
                        snapshot_hash=snapshot.snapshot_hash,
                        created_at=as_utc(snapshot.created_at),
                    )
                    for snapshot in snapshots
                ],
                attachments=[
                    AttachmentEntry(
                        attachment_type=attachment.attachment_type,
                        filename=attachment.filename,
                        description=attachment.description,
                        sha256_hash=attachment.sha256_hash,
                        file_size=attachment.file_size,
                        uploaded_by=attachment.uploaded_by,
                        created_at=as_utc(attachment.created_at),
                    )
                    for attachment in attachments
                ],
                chain=ChainSection(
                    valid=chain.valid,
                    total_events=chain.total_events,
                    broken_at_sequence=chain.broken_at_sequence,
                    expected_hash=chain.expected_hash,
                    actual_hash=chain.actual_hash,
                    detail=chain.detail,
                    first_event_at=_optional_utc(chain.first_event_at),
                    last_event_at=_optional_utc(chain.last_event_at),
                ),
                timeline=timeline,
            )
        logger.info("[EVIDENCE] Compiled %s (%s events, chain valid=%s)", report.document_id, len(timeline), chain.valid)
        return report


def _reportlab():
    from reportlab.lib import colors
    from reportlab.lib.pagesizes import A4
    from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
    from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

    return {
        "colors": colors,
        "A4": A4,
        "ParagraphStyle": ParagraphStyle,
        "getSampleStyleSheet": getSampleStyleSheet,
        "Paragraph": Paragraph,
        "SimpleDocTemplate": SimpleDocTemplate,
        "Spacer": Spacer,
        "Table": Table,
        "TableStyle": TableStyle,
    }


def _build_styles() -> dict[str, Any]:
    fonts = register_evidence_fonts(settings.evidence_pdf_font)
    font_name = fonts.text
    rl = _reportlab()
    styles = rl["getSampleStyleSheet"]()
    return {
        "font_name": font_name,
        "digest": rl["ParagraphStyle"]("PdfDigest", parent=styles["Normal"], fontName=fonts.digest, fontSize=7, leading=10),
        "title": rl["ParagraphStyle"]("PdfTitle", parent=styles["Title"], fontName=font_name),
        "heading": rl["ParagraphStyle"]("PdfHeading2", parent=styles["Heading2"], fontName=font_name),
        "normal": rl["ParagraphStyle"]("PdfNormal", parent=styles["Normal"], fontName=font_name, fontSize=8, leading=10),
    }


def _fmt(value: Any) -> str:
    if value is None or value == "":
        return "-"
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def _table(rows: list[list[str]], styles: dict[str, Any], col_widths: list[int]) -> Any:
    rl = _reportlab()
    cells = [[rl["Paragraph"](_escape(cell), _cell_style(cell, styles)) for cell in row] for row in rows]
    table = rl["Table"](cells, colWidths=col_widths, repeatRows=1)
    table.setStyle(
        rl["TableStyle"](
            [
                ("BACKGROUND", (0, 0), (-1, 0), rl["colors"].lightgrey),
                ("GRID", (0, 0), (-1, -1), 0.5, rl["colors"].black),
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
            ]
        )
    )
    return table


def _cell_style(cell: str, styles: dict[str, Any]) -> Any:
    return styles["digest"] if HEX_DIGEST.match(cell) else styles["normal"]


def _escape(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def _section(title: str, pairs: list[tuple[str, Any]], styles: dict[str, Any]) -> list[Any]:
    rl = _reportlab()
    story: list[Any] = [rl["Paragraph"](title, styles["heading"])]
    story.append(_table([["Field", "Value"], *[[label, _fmt(value)] for label, value in pairs]], styles, [150, 360]))
    story.append(rl["Spacer"](1, 8))
    return story


def _events_section(title: str, entries: list[TimelineEntry], styles: dict[str, Any]) -> list[Any]:
    rl = _reportlab()
    story: list[Any] = [rl["Paragraph"](title, styles["heading"])]
    if not entries:
        story.append(rl["Paragraph"]("No records.", styles["normal"]))
    else:
        rows = [["#", "Time (UTC)", "Event", "Details", "IP"]]
        for entry in entries:
            details = ", ".join(f"{key}={_fmt(value)}" for key, value in sorted(entry.event_data.items()))
            rows.append([str(entry.sequence_number), _fmt(entry.created_at), entry.event_type, details, _fmt(entry.ip_masked)])
        story.append(_table(rows, styles, [25, 105, 100, 210, 70]))
    story.append(rl["Spacer"](1, 8))
    return story


def render_evidence_pdf(report: EvidenceReport) -> bytes:
    """Render the compiled report as a PDF document."""
    styles = _build_styles()
    rl = _reportlab()
    order = report.order

    story: list[Any] = [
        rl["Paragraph"]("Transaction Evidence Report", styles["title"]),
        rl["Paragraph"](f"Document {report.document_id} / {_escape(report.store_name)}", styles["normal"]),
        rl["Paragraph"](f"Generated {_fmt(report.generated_at)} by {_escape(report.generated_by)}", styles["normal"]),
        rl["Spacer"](1, 10),
    ]
    story += _section(
        "1. Order summary",
        [
            ("Order number", order.order_number),
            ("Status", order.status),
            ("Payment status", order.payment_status),
            ("Product", f"{order.product_name} ({order.product_slug})"),
            ("Amount", f"{order.amount} {order.currency}"),
            ("Created", order.created_at),
            ("Downloads", f"{order.download_count} of {order.download_limit}"),
            ("Download window ends", order.downloads_expire_at),
            ("Frozen", f"{_fmt(order.evidence_frozen_at)} by {_fmt(order.evidence_frozen_by)}"),
            ("Retained until", order.retention_expires_at),
        ],
        styles,
    )
    story += _section(
        "2. Buyer identity",
        [
            ("Name", report.buyer.name),
            ("Email", report.buyer.email),
            ("IP (masked)", report.buyer.ip_masked),
            ("Location", ", ".join(filter(None, [report.buyer.city, report.buyer.country])) or None),
            ("User agent", report.buyer.user_agent),
        ],
        styles,
    )
    story += _section(
        "3. Payment proof",
        [
            ("Provider order", report.payment.provider_order_id),
            ("Capture", report.payment.provider_capture_id),
            ("Webhook received", report.payment.provider_webhook_received_at),
        ],
        styles,
    )
    story += _events_section("3a. Payment events", report.payment.events, styles)
    story += _section(
        "4. Terms acceptance",
        [
            ("Version", report.terms.version_label),
            ("Content SHA-256", report.terms.content_hash),
            ("Accepted at", report.terms.accepted_at),
            ("Accepted from IP", report.terms.accepted_ip_masked),
            ("User agent", report.terms.accepted_user_agent),
        ],
        styles,
    )
    if report.license is not None:
        story += _section(
            "5. License",
            [
                ("Key", report.license.license_key),
                ("Fingerprint", report.license.fingerprint),
                ("Status", report.license.status),
                ("Issued", report.license.created_at),
            ],
            styles,
        )
    story += _events_section("6. Download history", report.downloads, styles)
    if report.stages:
        story.append(rl["Paragraph"]("7. Delivery stages", styles["heading"]))
        rows = [["#", "Type", "Status", "File", "SHA-256", "Downloads", "Released"]]
        for stage in report.stages:
            rows.append(
                [
                    str(stage.stage_order),
                    stage.stage_type,
                    stage.status,
                    _fmt(stage.filename),
                    _fmt(stage.sha256_hash),
                    f"{stage.download_count}/{stage.download_limit}",
                    f"{_fmt(stage.released_at)} {_fmt(stage.released_by)}",
                ]
            )
        story.append(_table(rows, styles, [20, 45, 50, 90, 130, 50, 125]))
        story.append(rl["Spacer"](1, 8))
    access = report.access
    story += _section(
        "8. Proof of access",
        [
            ("Full downloads", access.successful_downloads),
            ("Resumed transfers", access.resumed_transfers),
            ("Denied attempts", access.denied_attempts),
            ("First download", access.first_download_at),
            ("Last download", access.last_download_at),
            ("Distinct IPs", access.distinct_ips),
            ("Bytes delivered", access.bytes_delivered),
        ],
        styles,
    )
    story += _events_section("9. Email delivery log", report.emails, styles)
    story += _events_section("10. Operator actions", report.admin_actions, styles)
    story.append(rl["Paragraph"]("11. Forensic snapshots and attachments", styles["heading"]))
    rows = [["Kind", "Name", "SHA-256", "Recorded"]]
    rows += [["snapshot", snapshot.snapshot_type, snapshot.snapshot_hash, _fmt(snapshot.created_at)] for snapshot in report.snapshots]
    rows += [
        [attachment.attachment_type, attachment.filename, attachment.sha256_hash, _fmt(attachment.created_at)]
        for attachment in report.attachments
    ]
    story.append(_table(rows, styles, [60, 120, 220, 110]))
    story.append(rl["Spacer"](1, 8))
    chain = report.chain
    story += _section(
        "12. Chain integrity",
        [
            ("Result", "VALID" if chain.valid else "BROKEN"),
            ("Events", chain.total_events),
            ("Broken at sequence", chain.broken_at_sequence),
            ("Expected hash", chain.expected_hash),
            ("Stored hash", chain.actual_hash),
            ("Detail", chain.detail),
            ("First event", chain.first_event_at),
            ("Last event", chain.last_event_at),
        ],
        styles,
    )

    buffer = BytesIO()
    document = rl["SimpleDocTemplate"](buffer, pagesize=rl["A4"], title=report.document_id)
    document.build(story)
    return buffer.getvalue()
