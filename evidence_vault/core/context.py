"""Wiring of the delivery components for one application instance."""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request
from sqlalchemy.orm import sessionmaker

from evidence_vault.core.config import Settings
from evidence_vault.core.crypto import CryptoContext
from evidence_vault.services.delivery import DeliveryStateMachine
from evidence_vault.services.dispute import DisputeModeService
from evidence_vault.services.download_gateway import DownloadGateway
from evidence_vault.services.evidence_attachments import EvidenceAttachmentService
from evidence_vault.services.evidence_report import EvidenceReportCompiler
from evidence_vault.services.file_store import FileStore, LocalFileStore
from evidence_vault.services.geoip import GeoIpResolver
from evidence_vault.services.ledger import EventLedger
from evidence_vault.services.mailer import Mailer, build_mailer
from evidence_vault.services.notifications import NotificationIngester
from evidence_vault.services.paypal import PayPalWebhookVerifier, WebhookSignatureVerifier
from evidence_vault.services.redemption import RedemptionService
from evidence_vault.services.tokens import DownloadTokenIssuer


@dataclass
class AppContext:
    settings: Settings
    session_factory: sessionmaker
    crypto: CryptoContext
    file_store: FileStore
    mailer: Mailer
    ledger: EventLedger
    tokens: DownloadTokenIssuer
    delivery: DeliveryStateMachine
    gateway: DownloadGateway
    ingester: NotificationIngester
    redemption: RedemptionService
    compiler: EvidenceReportCompiler
    dispute: DisputeModeService
    attachments: EvidenceAttachmentService


def build_context(
    session_factory: sessionmaker,
    settings: Settings,
    *,
    file_store: FileStore | None = None,
    mailer: Mailer | None = None,
    verifier: WebhookSignatureVerifier | None = None,
    geoip: GeoIpResolver | None = None,
) -> AppContext:
    """Build all components; collaborators can be replaced (tests, alternate stores)."""
    crypto = CryptoContext.from_settings(settings)
    file_store = file_store or LocalFileStore(settings.storage_dir)
    mailer = mailer or build_mailer(settings)
    ledger = EventLedger(session_factory, crypto, max_retries=settings.ledger_append_retries)
    tokens = DownloadTokenIssuer(crypto)
    delivery = DeliveryStateMachine(session_factory, ledger, tokens, mailer, settings)
    compiler = EvidenceReportCompiler(session_factory, settings)
    return AppContext(
        settings=settings,
        session_factory=session_factory,
        crypto=crypto,
        file_store=file_store,
        mailer=mailer,
        ledger=ledger,
        tokens=tokens,
        delivery=delivery,
        gateway=DownloadGateway(session_factory, ledger, tokens, file_store),
        ingester=NotificationIngester(session_factory, delivery, verifier or PayPalWebhookVerifier(settings)),
        redemption=RedemptionService(
            session_factory,
            ledger,
            delivery,
            crypto,
            geoip or GeoIpResolver(enabled=settings.geoip_enabled),
            settings,
        ),
        compiler=compiler,
        dispute=DisputeModeService(session_factory, ledger, delivery, compiler, file_store),
        attachments=EvidenceAttachmentService(session_factory, ledger, file_store),
    )


def get_context(request: Request) -> AppContext:
    """FastAPI dependency returning the context built at startup."""
    return request.app.state.context
