"""Order and delivery-stage state machine.

Every status change of an order or stage goes through this module; API
routes call these transition functions and never assign status fields
themselves.

Order statuses: ``pending -> paid -> confirmed`` with side branches to
``refunded``, ``disputed`` and ``revoked``. ``frozen`` is an operator
overlay: the payment status keeps evolving underneath it in
``Order.frozen_from_status`` while every delivery path is closed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import delete, exists, update
from sqlalchemy.orm import Session, sessionmaker

from evidence_vault.core.config import Settings
from evidence_vault.models.download_token import DownloadToken
from evidence_vault.models.order import DeliveryStage, Order
from evidence_vault.models.product import Product
from evidence_vault.services.errors import NotFound, StateConflict
from evidence_vault.services.ledger import EventLedger
from evidence_vault.services.mailer import Mailer
from evidence_vault.services.settings_service import get_store_identity
from evidence_vault.services.tokens import DownloadTokenIssuer, IssuedToken
from evidence_vault.utils.time import as_utc, days_from, is_past, iso_millis, utc_now

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"paid", "revoked"},
    "paid": {"confirmed", "refunded", "disputed", "revoked"},
    "confirmed": {"refunded", "disputed", "revoked"},
    "disputed": {"confirmed", "refunded", "revoked"},
    "refunded": {"disputed"},
    "revoked": set(),
}
# Statuses at which the buyer is known to have paid.
PAID_STATUSES: set[str] = {"paid", "confirmed", "disputed"}
RELEASED_STAGE_STATUSES: set[str] = {"ready", "delivered"}
STAGE_LABELS: dict[str, str] = {"preview": "Preview", "full": "Full delivery"}
# Re-reads allowed when a concurrent writer changed the order between load and UPDATE.
TRANSITION_ATTEMPTS: int = 5

Defer = Callable[..., Any]


def can_transition(current: str, new: str) -> bool:
    """Return whether the payment status can move from current to new."""
    return new in ALLOWED_TRANSITIONS.get(current, set())


def payment_status_values(order: Order, new_status: str) -> dict[str, str]:
    """Column values that move the payment status, respecting the freeze overlay."""
    current = order.payment_status
    if not can_transition(current, new_status):
        raise StateConflict("INVALID_TRANSITION", f"Order cannot move from {current} to {new_status}")
    if order.status == "frozen":
        return {"frozen_from_status": new_status}
    return {"status": new_status}


def status_unchanged(order: Order) -> list[Any]:
    """WHERE clauses matching ``order`` only while its status columns are as loaded."""
    if order.frozen_from_status is None:
        frozen_from = Order.frozen_from_status.is_(None)
    else:
        frozen_from = Order.frozen_from_status == order.frozen_from_status
    return [Order.id == order.id, Order.status == order.status, frozen_from]


@dataclass
class TransitionResult:
    order_id: str
    order_number: str
    previous_status: str
    status: str
    changed: bool


@dataclass
class FreezeResult:
    order_id: str
    order_number: str
    previous_status: str
    frozen_at: datetime
    frozen_by: str
    retention_expires_at: datetime


@dataclass
class RevokeResult:
    order_id: str
    order_number: str
    stages_revoked: int
    reason: str


@dataclass
class StageRelease:
    order_id: str
    stage_id: str
    stage_type: str
    released_at: datetime
    released_by: str
    download_url: str
    expires_at: datetime


class DeliveryStateMachine:
    """Centralized order/stage transitions with their ledger side effects."""

    def __init__(
        self,
        session_factory: sessionmaker,
        ledger: EventLedger,
        tokens: DownloadTokenIssuer,
        mailer: Mailer,
        settings: Settings,
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger
        self._tokens = tokens
        self._mailer = mailer
        self._settings = settings

    def download_url(self, raw_token: str) -> str:
        return f"{self._settings.app_url.rstrip('/')}/download/{raw_token}"

    # -- payment-driven transitions ------------------------------------

    def _transition(
        self,
        order_id: str,
        new_status: str,
        *,
        skip: Callable[[str], bool] | None = None,
        extra_values: dict[str, Any] | None = None,
    ) -> tuple[TransitionResult, Order]:
        """Move the payment status with a conditional UPDATE.

        The UPDATE only matches while ``status``/``frozen_from_status`` still
        hold the values just read, so a freeze committed in between is never
        overwritten: the order is re-read and the new status lands under the
        overlay instead. ``skip(previous)`` returning True leaves the status
        alone and reports ``changed=False``.
        """
        for _ in range(TRANSITION_ATTEMPTS):
            with self._session_factory() as db:
                order = self._get_order(db, order_id)
                previous = order.payment_status
                if skip is not None and skip(previous):
                    return self._result(order, previous, changed=False), order
                values = {**payment_status_values(order, new_status), **(extra_values or {})}
                matched = db.execute(
                    update(Order)
                    .where(*status_unchanged(order))
                    .values(**values)
                    .execution_options(synchronize_session=False)
                ).rowcount
                if matched:
                    result = TransitionResult(
                        order_id=order.id,
                        order_number=order.order_number,
                        previous_status=previous,
                        status=new_status,
                        changed=True,
                    )
                    db.commit()
                    return result, order
                db.rollback()
            logger.info("[ORDER] Order %s changed before %s -> %s was written; re-reading", order_id, previous, new_status)
        raise StateConflict("TRANSITION_CONTENTION", f"Order {order_id} kept changing; {new_status} not applied")

    def record_payment(self, order_id: str, *, capture_id: str, source: str = "checkout") -> TransitionResult:
        """``pending -> paid`` after the provider captured the payment."""
        result, order = self._transition(order_id, "paid", extra_values={"provider_capture_id": capture_id})
        self._ledger.append(
            order_id,
            "payment.captured",
            {"capture_id": capture_id, "source": source, "amount": str(order.amount), "currency": order.currency},
        )
        return result

    def confirm_capture(self, order_id: str, *, capture_id: str, provider_event_id: str, external_ref: str) -> TransitionResult:
        """Provider confirmation of a capture: ``paid -> confirmed``, otherwise logged only."""
        received_at = utc_now()
        result, _ = self._transition(
            order_id,
            "confirmed",
            skip=lambda previous: previous != "paid",
            extra_values={"provider_webhook_received_at": received_at},
        )
        if not result.changed:
            with self._session_factory() as db:
                db.execute(
                    update(Order)
                    .where(Order.id == order_id)
                    .values(provider_webhook_received_at=received_at)
                    .execution_options(synchronize_session=False)
                )
                db.commit()
        self._ledger.append(
            order_id,
            "webhook.payment_confirmed",
            {
                "capture_id": capture_id,
                "provider_event_id": provider_event_id,
                "source": "PAYMENT.CAPTURE.COMPLETED",
                "previous_status": result.previous_status,
            },
            external_ref=external_ref,
        )
        return result

    def refund(self, order_id: str, *, provider_event_id: str, refund_id: str | None, external_ref: str) -> TransitionResult:
        """Move to ``refunded`` and revoke downloads."""
        result, _ = self._transition(
            order_id,
            "refunded",
            skip=lambda previous: previous == "refunded",
            extra_values={"downloads_revoked": True},
        )
        if not result.changed:
            return result
        self._ledger.append(
            order_id,
            "payment.refunded",
            {"provider_event_id": provider_event_id, "refund_id": refund_id, "previous_status": result.previous_status},
            external_ref=external_ref,
        )
        return result

    def open_dispute(
        self,
        order_id: str,
        *,
        provider_event_id: str,
        dispute_id: str | None,
        reason: str | None,
        external_ref: str,
    ) -> TransitionResult:
        result, _ = self._transition(order_id, "disputed", skip=lambda previous: previous == "disputed")
        if not result.changed:
            return result
        self._ledger.append(
            order_id,
            "dispute.created",
            {
                "provider_event_id": provider_event_id,
                "previous_status": result.previous_status,
                "dispute_id": dispute_id,
                "reason": reason,
            },
            external_ref=external_ref,
        )
        return result

    # -- operator actions ----------------------------------------------

    def freeze(self, order_id: str, *, actor: str, chain_valid: bool, chain_total_events: int) -> FreezeResult:
        """Enter dispute mode: freeze overlay, revoke downloads, extend retention."""
        now = utc_now()
        for _ in range(TRANSITION_ATTEMPTS):
            with self._session_factory() as db:
                order = self._get_order(db, order_id)
                if order.status == "frozen" or order.evidence_frozen_at is not None:
                    raise StateConflict("ALREADY_FROZEN", "Evidence already frozen for this order")
                previous = order.status
                retention = days_from(now, self._settings.retention_days)
                if order.retention_expires_at is not None and is_past(retention, as_utc(order.retention_expires_at)):
                    retention = as_utc(order.retention_expires_at)
                order_number = order.order_number
                matched = db.execute(
                    update(Order)
                    .where(*status_unchanged(order), Order.evidence_frozen_at.is_(None))
                    .values(
                        frozen_from_status=previous,
                        status="frozen",
                        evidence_frozen_at=now,
                        evidence_frozen_by=actor,
                        downloads_revoked=True,
                        retention_expires_at=retention,
                    )
                    .execution_options(synchronize_session=False)
                ).rowcount
                if matched:
                    db.commit()
                    break
                db.rollback()
            logger.info("[DISPUTE] Order %s changed while freezing; re-reading", order_id)
        else:
            raise StateConflict("TRANSITION_CONTENTION", f"Order {order_id} kept changing; freeze not applied")

        logger.warning("[DISPUTE] Order %s frozen by %s (was %s)", order_number, actor, previous)
        self._ledger.append(
            order_id,
            "admin.dispute_mode_activated",
            {
                "activated_by": actor,
                "previous_status": previous,
                "frozen_at": iso_millis(now),
                "retention_expires_at": iso_millis(retention),
                "chain_valid": chain_valid,
                "chain_total_events": chain_total_events,
            },
        )
        self._ledger.append(
            order_id,
            "admin.downloads_revoked",
            {"reason": "dispute_mode_activation", "revoked_by": actor, "previous_status": previous},
        )
        return FreezeResult(
            order_id=order_id,
            order_number=order_number,
            previous_status=previous,
            frozen_at=now,
            frozen_by=actor,
            retention_expires_at=retention,
        )

    def revoke_downloads(self, order_id: str, *, actor: str, reason: str) -> RevokeResult:
        """Soft revocation without freezing evidence; pending/ready stages are revoked too."""
        with self._session_factory() as db:
            order = self._get_order(db, order_id)
            if order.downloads_revoked:
                raise StateConflict("ALREADY_REVOKED", "Downloads already revoked for this order")
            previous = order.status
            order.downloads_revoked = True
            revoked = db.execute(
                update(DeliveryStage)
                .where(DeliveryStage.order_id == order_id, DeliveryStage.status.in_(("pending", "ready")))
                .values(status="revoked")
            ).rowcount
            order_number = order.order_number
            db.commit()

        self._ledger.append(
            order_id,
            "admin.downloads_revoked",
            {"reason": reason, "revoked_by": actor, "previous_status": previous, "note": "Revoked without evidence freeze"},
        )
        if revoked:
            self._ledger.append(order_id, "admin.stages_revoked", {"revoked_count": revoked, "revoked_by": actor, "reason": reason})
        return RevokeResult(order_id=order_id, order_number=order_number, stages_revoked=revoked, reason=reason)

    def release_stage(self, order_id: str, stage_id: str, *, actor: str, defer: Defer | None = None) -> StageRelease:
        """``pending -> ready``: stamp, log, mint a stage token and notify the buyer."""
        now = utc_now()
        with self._session_factory() as db:
            order = self._get_order(db, order_id)
            if order.status == "frozen":
                raise self._conflict("ORDER_FROZEN", "Order is frozen; stages cannot be released", 403, order_id)
            stage = db.get(DeliveryStage, stage_id)
            if stage is None or stage.order_id != order_id:
                raise NotFound("STAGE_NOT_FOUND", "Stage not found")
            if stage.status in RELEASED_STAGE_STATUSES:
                raise self._conflict("STAGE_ALREADY_RELEASED", "Stage already released", 409, order_id)
            if stage.status == "revoked":
                raise self._conflict("STAGE_REVOKED", "Stage has been revoked", 409, order_id)
            if order.payment_status not in PAID_STATUSES:
                raise self._conflict("ORDER_NOT_PAID", "Order has not been paid", 409, order_id)
            if order.downloads_revoked:
                raise self._conflict("DOWNLOADS_REVOKED", "Downloads have been revoked", 403, order_id)

            claimed = db.execute(
                update(DeliveryStage)
                .where(
                    DeliveryStage.id == stage_id,
                    DeliveryStage.status == "pending",
                    exists().where(Order.id == order_id, Order.status != "frozen"),
                )
                .values(status="ready", released_at=now, released_by=actor)
                .execution_options(synchronize_session=False)
            ).rowcount
            if claimed != 1:
                db.rollback()
                raise self._conflict("STAGE_ALREADY_RELEASED", "Stage was released or frozen concurrently", 409, order_id)

            issued = self._tokens.issue(order_id, stage_id, self._settings.stage_token_ttl_minutes)
            db.add(DownloadToken(order_id=order_id, stage_id=stage_id, token_hash=issued.token_hash, source="stage_release", expires_at=issued.expires_at))
            stage_info = {
                "stage_type": stage.stage_type,
                "stage_order": stage.stage_order,
                "filename": stage.filename,
                "sha256_hash": stage.sha256_hash,
            }
            mail_data = {
                "order_number": order.order_number,
                "product_name": order.product.name,
                "stage_name": STAGE_LABELS.get(stage.stage_type, stage.stage_type.title()),
                **self._store_fields(db),
            }
            buyer_email = order.buyer_email
            db.commit()

        try:
            self._ledger.append(
                order_id,
                "admin.stage_released",
                {"stage_id": stage_id, "released_by": actor, "token_hash_prefix": issued.hash_prefix, **stage_info},
            )
        except Exception:
            logger.exception("[STAGE] Ledger append failed; rolling back release of stage %s", stage_id)
            self._undo_release(stage_id, issued.token_hash)
            raise

        url = self.download_url(issued.raw_token)
        mail_data.update({"download_url": url, "expires_at": iso_millis(issued.expires_at)})
        if defer is not None:
            defer(self.notify_buyer, order_id, "stage_released", buyer_email, mail_data, stage_id)
        else:
            self.notify_buyer(order_id, "stage_released", buyer_email, mail_data, stage_id)

        return StageRelease(
            order_id=order_id,
            stage_id=stage_id,
            stage_type=str(stage_info["stage_type"]),
            released_at=now,
            released_by=actor,
            download_url=url,
            expires_at=issued.expires_at,
        )

    # -- tokens ----------------------------------------------------------

    def issue_download_token(
        self,
        order_id: str,
        *,
        stage_id: str | None = None,
        source: str = "my-downloads",
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> tuple[IssuedToken, str]:
        """Mint a fresh link for a buyer; returns ``(token, url)``."""
        with self._session_factory() as db:
            order = self._get_order(db, order_id)
            if order.status == "frozen":
                frozen = True
            else:
                frozen = False
                self._check_can_issue(db, order, stage_id)
            if not frozen:
                issued = self._tokens.issue(order_id, stage_id, self._settings.checkout_token_ttl_minutes)
                db.add(DownloadToken(order_id=order_id, stage_id=stage_id, token_hash=issued.token_hash, source=source, expires_at=issued.expires_at))
                db.commit()

        if frozen:
            self._ledger.append(
                order_id,
                "download.denied_frozen",
                {"source": source, "result": "DENIED_FROZEN"},
                ip=ip,
                user_agent=user_agent,
            )
            raise StateConflict("DENIED_FROZEN", "Downloads are frozen for this order", 403)

        self._ledger.append(
            order_id,
            "download.token_generated",
            {"token_hash_prefix": issued.hash_prefix, "expires_at": iso_millis(issued.expires_at), "source": source, "stage_id": stage_id},
            ip=ip,
            user_agent=user_agent,
        )
        return issued, self.download_url(issued.raw_token)

    def grant_initial_token(self, db: Session, order: Order, *, ttl_minutes: int, source: str) -> IssuedToken:
        """Mint the first token inside the caller's order-creation transaction."""
        issued = self._tokens.issue(order.id, None, ttl_minutes)
        db.add(DownloadToken(order_id=order.id, token_hash=issued.token_hash, source=source, expires_at=issued.expires_at))
        return issued

    @staticmethod
    def create_stages(db: Session, order: Order, product: Product) -> list[DeliveryStage]:
        """Create one pending stage per product file for staged products."""
        if not product.is_staged:
            return []
        stages = [
            DeliveryStage(
                order_id=order.id,
                stage_order=index,
                stage_type="preview" if index == 1 else "full",
                status="pending",
                storage_key=product_file.storage_key,
                filename=product_file.filename,
                sha256_hash=product_file.sha256_hash,
                file_size=product_file.file_size,
                download_limit=product.download_limit,
            )
            for index, product_file in enumerate(product.files, start=1)
        ]
        db.add_all(stages)
        return stages

    def notify_buyer(self, order_id: str, template: str, recipient: str, data: dict[str, Any], stage_id: str | None = None) -> None:
        """Send a buyer email; failures are recorded, never raised."""
        try:
            result = self._mailer.send(template, recipient, data)
        except Exception as exc:
            logger.exception("[MAILER] %s for order %s failed", template, order_id)
            self._ledger.append(order_id, "email.failed", {"template": template, "to": recipient, "error": str(exc)[:500]})
            return
        self._ledger.append(
            order_id,
            "email.sent",
            {"template": template, "to": recipient, "message_id": result.get("messageId", ""), "stage_id": stage_id},
        )

    # -- helpers -----------------------------------------------------------

    def _store_fields(self, db: Session) -> dict[str, str]:
        identity = get_store_identity(db, defaults=self._settings)
        return {"store_name": identity.store_name, "support_email": identity.support_email}

    def _check_can_issue(self, db: Session, order: Order, stage_id: str | None) -> None:
        if order.payment_status == "refunded" or order.downloads_revoked:
            raise StateConflict("DENIED_REVOKED", "Downloads have been revoked", 403)
        if order.payment_status not in PAID_STATUSES:
            raise StateConflict("ORDER_NOT_PAID", "Order has not been paid", 409)
        if is_past(order.downloads_expire_at):
            raise StateConflict("DENIED_EXPIRED", "Download period has expired", 410)
        if order.download_count >= order.download_limit:
            raise StateConflict("DENIED_LIMIT_REACHED", "Download limit reached", 429)
        if stage_id is None:
            return
        stage = db.get(DeliveryStage, stage_id)
        if stage is None or stage.order_id != order.id:
            raise NotFound("STAGE_NOT_FOUND", "Stage not found")
        if stage.status not in RELEASED_STAGE_STATUSES:
            raise StateConflict("DENIED_STAGE_NOT_RELEASED", "Stage not yet released", 403)
        if stage.download_count >= stage.download_limit:
            raise StateConflict("DENIED_LIMIT_REACHED", "Stage download limit reached", 429)

    def _undo_release(self, stage_id: str, token_hash: str) -> None:
        with self._session_factory() as db:
            db.execute(delete(DownloadToken).where(DownloadToken.token_hash == token_hash))
            db.execute(
                update(DeliveryStage)
                .where(DeliveryStage.id == stage_id)
                .values(status="pending", released_at=None, released_by=None)
            )
            db.commit()

    @staticmethod
    def _conflict(code: str, message: str, status_code: int, order_id: str) -> StateConflict:
        logger.warning("[STAGE] Release rejected for order %s: %s", order_id, code)
        return StateConflict(code, message, status_code)

    @staticmethod
    def _get_order(db: Session, order_id: str) -> Order:
        order = db.get(Order, order_id)
        if order is None:
            raise NotFound("ORDER_NOT_FOUND", "Order not found")
        return order

    @staticmethod
    def _result(order: Order, previous: str, *, changed: bool) -> TransitionResult:
        return TransitionResult(
            order_id=order.id,
            order_number=order.order_number,
            previous_status=previous,
            status=order.payment_status,
            changed=changed,
        )
