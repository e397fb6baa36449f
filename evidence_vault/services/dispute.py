"""Dispute mode: freeze an order and preserve its evidence package."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import update
from sqlalchemy.orm import sessionmaker

from evidence_vault.core.crypto import sha256_bytes
from evidence_vault.models import Order
from evidence_vault.services.delivery import DeliveryStateMachine, FreezeResult
from evidence_vault.services.evidence_report import EvidenceReportCompiler, render_evidence_pdf
from evidence_vault.services.file_store import FileStore
from evidence_vault.services.ledger import EventLedger

logger = logging.getLogger(__name__)


@dataclass
class DisputeModeResult:
    freeze: FreezeResult
    chain_valid: bool
    pdf_key: str | None = None
    pdf_hash: str | None = None


class DisputeModeService:
    def __init__(
        self,
        session_factory: sessionmaker,
        ledger: EventLedger,
        delivery: DeliveryStateMachine,
        compiler: EvidenceReportCompiler,
        file_store: FileStore,
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger
        self._delivery = delivery
        self._compiler = compiler
        self._file_store = file_store

    def activate(self, order_id: str, *, actor: str) -> DisputeModeResult:
        """Freeze the order, then render and store the evidence PDF.

        The freeze stands even if PDF generation or upload fails; that
        failure is logged and the PDF can be produced later on demand.
        """
        chain = self._ledger.verify(order_id)
        if not chain.valid:
            logger.warning("[DISPUTE] Freezing order %s with a broken chain at #%s", order_id, chain.broken_at_sequence)
        frozen = self._delivery.freeze(
            order_id,
            actor=actor,
            chain_valid=chain.valid,
            chain_total_events=chain.total_events,
        )
        result = DisputeModeResult(freeze=frozen, chain_valid=chain.valid)

        try:
            report = self._compiler.compile(order_id, generated_by=actor)
            pdf = render_evidence_pdf(report)
            key = f"evidence/{frozen.order_number}/{report.document_id}.pdf"
            self._file_store.upload(key, pdf, "application/pdf")
        except Exception:
            logger.exception("[DISPUTE] Evidence PDF generation failed for order %s", frozen.order_number)
            return result

        pdf_hash = sha256_bytes(pdf)
        with self._session_factory() as db:
            db.execute(
                update(Order)
                .where(Order.id == order_id)
                .values(frozen_evidence_pdf_key=key, frozen_evidence_pdf_hash=pdf_hash)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        self._ledger.append(
            order_id,
            "admin.evidence_pdf_generated",
            {
                "document_id": report.document_id,
                "storage_key": key,
                "pdf_hash": pdf_hash,
                "pdf_size_bytes": len(pdf),
                "chain_valid": report.chain.valid,
                "generated_by": actor,
            },
        )
        result.pdf_key = key
        result.pdf_hash = pdf_hash
        return result
