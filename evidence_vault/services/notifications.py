"""Idempotent ingestion of payment-provider webhook notifications.

Signature verification happens before anything is dispatched, and every
notification is recorded once per provider event id. Redeliveries of a
processed event are acknowledged with 200 and change nothing.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from evidence_vault.models import NotificationLog, Order
from evidence_vault.services.delivery import DeliveryStateMachine
from evidence_vault.services.errors import DeliveryError
from evidence_vault.services.paypal import WebhookSignatureVerifier, webhook_ref
from evidence_vault.utils.time import utc_now

logger = logging.getLogger(__name__)

CAPTURE_COMPLETED = "PAYMENT.CAPTURE.COMPLETED"
CAPTURE_REFUNDED = "PAYMENT.CAPTURE.REFUNDED"
CAPTURE_REVERSED = "PAYMENT.CAPTURE.REVERSED"
DISPUTE_CREATED = "CUSTOMER.DISPUTE.CREATED"


@dataclass
class IngestOutcome:
    status_code: int
    message: str
    processing_result: str | None = None
    linked_order_id: str | None = None
    duplicate: bool = False


@dataclass
class HandlerResult:
    message: str
    order_id: str | None = None


class NotificationIngester:
    def __init__(
        self,
        session_factory: sessionmaker,
        delivery: DeliveryStateMachine,
        verifier: WebhookSignatureVerifier,
        provider: str = "paypal",
    ) -> None:
        self._session_factory = session_factory
        self._delivery = delivery
        self._verifier = verifier
        self._provider = provider

    def ingest(self, raw_body: bytes | str, headers: Mapping[str, str]) -> IngestOutcome:
        try:
            payload = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError):
            return IngestOutcome(400, "Invalid JSON")
        if not isinstance(payload, dict):
            return IngestOutcome(400, "Invalid JSON")

        event_id = payload.get("id")
        if not event_id or not isinstance(event_id, str):
            return IngestOutcome(400, "Missing event ID")
        event_type = str(payload.get("event_type") or "UNKNOWN")

        try:
            signature_valid = bool(self._verifier.verify(headers, payload))
        except Exception:
            logger.exception("[WEBHOOK] Signature verification error for %s", event_id)
            signature_valid = False

        if not self._record(event_id, event_type, payload, signature_valid):
            logger.info("[WEBHOOK] Duplicate event ignored: %s", event_id)
            return IngestOutcome(200, "OK (duplicate)", duplicate=True)

        if not signature_valid:
            logger.warning("[WEBHOOK] Rejected %s (%s): invalid signature", event_id, event_type)
            self._finish(event_id, "REJECTED: invalid signature", None)
            return IngestOutcome(401, "Invalid signature", "REJECTED: invalid signature")

        try:
            result = self._dispatch(event_type, event_id, payload)
        except DeliveryError as exc:
            logger.warning("[WEBHOOK] %s for %s rejected: %s", event_type, event_id, exc.code)
            result = HandlerResult(f"CONFLICT: {exc.code}")
        except Exception as exc:
            logger.exception("[WEBHOOK] Processing error for %s (%s)", event_type, event_id)
            result = HandlerResult(f"ERROR: {exc}")

        self._finish(event_id, result.message, result.order_id)
        logger.info("[WEBHOOK] %s %s -> %s", event_type, event_id, result.message)
        return IngestOutcome(200, "OK", result.message, result.order_id)

    def _record(self, event_id: str, event_type: str, payload: dict[str, Any], signature_valid: bool) -> bool:
        """Insert the log row; False when the event id was already recorded.

        A row left behind by a forged (invalid-signature) delivery does not
        block the authentic notification carrying the same id.
        """
        with self._session_factory() as db:
            db.add(
                NotificationLog(
                    provider=self._provider,
                    provider_event_id=event_id,
                    event_type=event_type,
                    payload=payload,
                    signature_valid=signature_valid,
                )
            )
            try:
                db.commit()
                return True
            except IntegrityError:
                db.rollback()

            if not signature_valid:
                return False
            taken_over = db.execute(
                update(NotificationLog)
                .where(NotificationLog.provider_event_id == event_id, NotificationLog.signature_valid.is_(False))
                .values(
                    event_type=event_type,
                    payload=payload,
                    signature_valid=True,
                    processed=False,
                    processing_result=None,
                    processed_at=None,
                    received_at=utc_now(),
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            db.commit()
        if taken_over:
            logger.warning("[WEBHOOK] Event %s previously recorded with invalid signature; reprocessing", event_id)
        return taken_over == 1

    def _finish(self, event_id: str, result: str, order_id: str | None) -> None:
        with self._session_factory() as db:
            db.execute(
                update(NotificationLog)
                .where(NotificationLog.provider_event_id == event_id)
                .values(processed=True, processing_result=result, linked_order_id=order_id, processed_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            db.commit()

    def _dispatch(self, event_type: str, event_id: str, payload: dict[str, Any]) -> HandlerResult:
        resource = payload.get("resource")
        if event_type in (CAPTURE_COMPLETED, CAPTURE_REFUNDED, CAPTURE_REVERSED, DISPUTE_CREATED):
            if not isinstance(resource, dict):
                return HandlerResult("No resource in payload")
        if event_type == CAPTURE_COMPLETED:
            return self._capture_completed(event_id, resource)
        if event_type in (CAPTURE_REFUNDED, CAPTURE_REVERSED):
            return self._capture_refunded(event_id, resource)
        if event_type == DISPUTE_CREATED:
            return self._dispute_created(event_id, resource)
        return HandlerResult(f"IGNORED: {event_type}")

    def _capture_completed(self, event_id: str, resource: dict[str, Any]) -> HandlerResult:
        capture_id = str(resource.get("id") or "")
        custom_id = resource.get("custom_id") or (
            (resource.get("supplementary_data") or {}).get("related_ids") or {}
        ).get("order_id")

        order_id = self._find_order(capture_id=capture_id, order_number=custom_id)
        if order_id is None:
            return HandlerResult(f"No order found for capture {capture_id}")
        result = self._delivery.confirm_capture(
            order_id,
            capture_id=capture_id,
            provider_event_id=event_id,
            external_ref=webhook_ref(event_id),
        )
        return HandlerResult(f"Confirmed capture {capture_id} for order {result.order_number}", order_id)

    def _capture_refunded(self, event_id: str, resource: dict[str, Any]) -> HandlerResult:
        links = resource.get("links") or []
        up = next((link.get("href") for link in links if isinstance(link, dict) and link.get("rel") == "up"), None)
        capture_id = up.rstrip("/").split("/")[-1] if up else None

        order_id = self._find_order(capture_id=capture_id)
        if order_id is None:
            return HandlerResult("No order found for refund")
        result = self._delivery.refund(
            order_id,
            provider_event_id=event_id,
            refund_id=resource.get("id"),
            external_ref=webhook_ref(event_id),
        )
        if not result.changed:
            return HandlerResult(f"Order {result.order_number} already refunded", order_id)
        return HandlerResult(f"Refunded order {result.order_number}", order_id)

    def _dispute_created(self, event_id: str, resource: dict[str, Any]) -> HandlerResult:
        transactions = resource.get("disputed_transactions") or []
        if not transactions:
            return HandlerResult("No transactions in dispute")
        first = transactions[0]
        order_id = self._find_order(
            capture_id=first.get("seller_transaction_id"),
            order_number=first.get("custom"),
        )
        if order_id is None:
            return HandlerResult("No order found for dispute")
        result = self._delivery.open_dispute(
            order_id,
            provider_event_id=event_id,
            dispute_id=resource.get("dispute_id"),
            reason=resource.get("reason"),
            external_ref=webhook_ref(event_id),
        )
        return HandlerResult(f"Dispute opened on order {result.order_number}", order_id)

    def _find_order(self, *, capture_id: str | None = None, order_number: str | None = None) -> str | None:
        with self._session_factory() as db:
            if capture_id:
                order_id = db.scalar(select(Order.id).where(Order.provider_capture_id == capture_id).limit(1))
                if order_id is not None:
                    return order_id
            if order_number:
                return db.scalar(select(Order.id).where(Order.order_number == order_number).limit(1))
        return None
