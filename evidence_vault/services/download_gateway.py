"""Download gateway: validates a raw token and streams the delivered file.

A full (non-Range) download consumes the token and counts against the
order (and stage) limit. Consumption is a set of conditional UPDATEs in
one transaction, so two concurrent requests with the same token or
racing for the last allowed download cannot both win. Range requests
resume a transfer and never consume.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from evidence_vault.models.download_token import DownloadToken
from evidence_vault.models.order import DeliveryStage, Order
from evidence_vault.services.delivery import PAID_STATUSES, RELEASED_STAGE_STATUSES
from evidence_vault.services.errors import DeliveryError
from evidence_vault.services.file_store import FileStore, FileStream, RangeNotSatisfiable
from evidence_vault.services.ledger import EventLedger
from evidence_vault.services.tokens import HASH_PREFIX_LENGTH, DownloadTokenIssuer, hash_token
from evidence_vault.utils.time import is_past, utc_now

logger = logging.getLogger(__name__)


class DownloadDenied(DeliveryError):
    """A refused download; ``code`` is the result recorded in the ledger."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int,
        *,
        details: dict[str, Any] | None = None,
        object_size: int | None = None,
    ) -> None:
        super().__init__(code, message, status_code)
        self.details = details or {}
        self.object_size = object_size

    @property
    def result(self) -> str:
        return self.code


@dataclass
class DownloadTarget:
    order_id: str
    token_id: int
    token_hash: str
    stage_id: str | None
    storage_key: str
    filename: str


@dataclass
class ServedDownload:
    stream: FileStream
    filename: str
    result: str
    order_id: str


class DownloadGateway:
    def __init__(
        self,
        session_factory: sessionmaker,
        ledger: EventLedger,
        tokens: DownloadTokenIssuer,
        file_store: FileStore,
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger
        self._tokens = tokens
        self._file_store = file_store

    def serve(
        self,
        raw_token: str,
        *,
        range_header: str | None = None,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> ServedDownload:
        """Validate ``raw_token`` and open the file; raises ``DownloadDenied``."""
        payload = self._tokens.verify(raw_token)
        if payload is None:
            raise DownloadDenied("DENIED_INVALID_TOKEN", "Invalid or expired download link", 403)

        token_hash = hash_token(raw_token)
        prefix = token_hash[:HASH_PREFIX_LENGTH]
        audit = {"ip": ip, "user_agent": user_agent}

        with self._session_factory() as db:
            token = db.scalars(select(DownloadToken).where(DownloadToken.token_hash == token_hash)).first()
            order = db.get(Order, payload.order_id)
            denied = None
            if token is None or token.order_id != payload.order_id:
                denied = DownloadDenied("DENIED_TOKEN_NOT_FOUND", "Download token not found", 404)
            elif is_past(token.expires_at):
                denied = DownloadDenied("DENIED_TOKEN_EXPIRED", "Download link has expired", 410)
            elif order is None:
                denied = DownloadDenied("DENIED_ORDER_NOT_FOUND", "Order not found", 404)
            else:
                try:
                    target = self._resolve(db, order, token, token_hash)
                except DownloadDenied as exc:
                    denied = exc

        if denied is not None:
            # The signature vouches for payload.order_id, so the denial is logged there.
            if order is not None:
                self._deny(payload.order_id, denied, prefix, audit, extra=denied.details)
            else:
                logger.warning("[DOWNLOAD] %s token=%s order=%s", denied.code, prefix, payload.order_id)
            raise denied

        if range_header:
            return self._serve_range(target, range_header, prefix, audit)
        return self._serve_full(target, prefix, audit)

    def _resolve(self, db: Session, order: Order, token: DownloadToken, token_hash: str) -> DownloadTarget:
        if order.status == "frozen":
            raise DownloadDenied("DENIED_FROZEN", "Downloads are frozen for this order", 403)
        if order.downloads_revoked or order.payment_status in {"refunded", "revoked"}:
            raise DownloadDenied("DENIED_REVOKED", "Downloads have been revoked", 403)
        if order.payment_status not in PAID_STATUSES:
            raise DownloadDenied("DENIED_NOT_PAID", "Order has not been paid", 403)
        if is_past(order.downloads_expire_at):
            raise DownloadDenied("DENIED_EXPIRED", "Download period has expired", 410)
        if token.used:
            raise DownloadDenied("DENIED_TOKEN_USED", "This download link has already been used", 410)
        if order.download_count >= order.download_limit:
            raise DownloadDenied(
                "DENIED_LIMIT_REACHED",
                "Download limit reached",
                429,
                details={"download_count": order.download_count, "download_limit": order.download_limit},
            )

        if token.stage_id:
            stage = db.get(DeliveryStage, token.stage_id)
            if stage is None or not stage.storage_key or stage.status == "revoked":
                raise DownloadDenied("DENIED_STAGE_UNAVAILABLE", "Stage not available", 404)
            if stage.status not in RELEASED_STAGE_STATUSES:
                raise DownloadDenied("DENIED_STAGE_NOT_RELEASED", "This stage has not been released yet", 403)
            if stage.download_count >= stage.download_limit:
                raise DownloadDenied(
                    "DENIED_LIMIT_REACHED",
                    "Stage download limit reached",
                    429,
                    details={"download_count": stage.download_count, "download_limit": stage.download_limit},
                )
            storage_key, filename = stage.storage_key, stage.filename or "download"
        elif order.delivery_package_key:
            storage_key, filename = order.delivery_package_key, f"{order.order_number}-delivery.zip"
        elif order.product.files:
            primary = order.product.files[0]
            storage_key, filename = primary.storage_key, primary.filename
        else:
            raise DownloadDenied("DENIED_FILE_NOT_FOUND", "No files available", 404)

        return DownloadTarget(
            order_id=order.id,
            token_id=token.id,
            token_hash=token_hash,
            stage_id=token.stage_id,
            storage_key=storage_key,
            filename=filename,
        )

    def _open(self, target: DownloadTarget, range_header: str | None, prefix: str, audit: dict[str, Any]) -> FileStream:
        try:
            stream = self._file_store.stream(target.storage_key, range_header)
        except RangeNotSatisfiable as exc:
            denied = DownloadDenied(
                "DENIED_RANGE_NOT_SATISFIABLE",
                "Requested range not satisfiable",
                416,
                object_size=exc.size,
            )
            self._deny(target.order_id, denied, prefix, audit, extra={"storage_key": target.storage_key})
            raise denied from exc
        if stream is None:
            denied = DownloadDenied("DENIED_FILE_NOT_FOUND", "File not found in storage", 404)
            self._deny(target.order_id, denied, prefix, audit, extra={"storage_key": target.storage_key})
            raise denied
        return stream

    def _serve_range(self, target: DownloadTarget, range_header: str, prefix: str, audit: dict[str, Any]) -> ServedDownload:
        stream = self._open(target, range_header, prefix, audit)
        self._completed(target, "OK_RANGE", stream, prefix, audit, range_header)
        return ServedDownload(stream=stream, filename=target.filename, result="OK_RANGE", order_id=target.order_id)

    def _serve_full(self, target: DownloadTarget, prefix: str, audit: dict[str, Any]) -> ServedDownload:
        stream = self._open(target, None, prefix, audit)
        try:
            self._consume(target)
        except DownloadDenied as exc:
            self._deny(target.order_id, exc, prefix, audit)
            raise
        self._completed(target, "OK", stream, prefix, audit, None)
        return ServedDownload(stream=stream, filename=target.filename, result="OK", order_id=target.order_id)

    def _consume(self, target: DownloadTarget) -> None:
        """Mark the token used and count the download, all or nothing."""
        with self._session_factory() as db:
            claimed = db.execute(
                update(DownloadToken)
                .where(DownloadToken.id == target.token_id, DownloadToken.used.is_(False))
                .values(used=True, used_at=utc_now())
                .execution_options(synchronize_session=False)
            ).rowcount
            if claimed != 1:
                db.rollback()
                raise DownloadDenied("DENIED_TOKEN_USED", "This download link has already been used", 410)

            counted = db.execute(
                update(Order)
                .where(
                    Order.id == target.order_id,
                    Order.download_count < Order.download_limit,
                    Order.status != "frozen",
                    Order.downloads_revoked.is_(False),
                )
                .values(download_count=Order.download_count + 1)
                .execution_options(synchronize_session=False)
            ).rowcount
            if counted != 1:
                db.rollback()
                raise DownloadDenied("DENIED_LIMIT_REACHED", "Download limit reached", 429)

            if target.stage_id:
                staged = db.execute(
                    update(DeliveryStage)
                    .where(
                        DeliveryStage.id == target.stage_id,
                        DeliveryStage.download_count < DeliveryStage.download_limit,
                        DeliveryStage.status.in_(tuple(RELEASED_STAGE_STATUSES)),
                    )
                    .values(download_count=DeliveryStage.download_count + 1, status="delivered")
                    .execution_options(synchronize_session=False)
                ).rowcount
                if staged != 1:
                    db.rollback()
                    raise DownloadDenied("DENIED_LIMIT_REACHED", "Stage download limit reached", 429)
            db.commit()

    def _completed(
        self,
        target: DownloadTarget,
        result: str,
        stream: FileStream,
        prefix: str,
        audit: dict[str, Any],
        range_header: str | None,
    ) -> None:
        logger.info("[DOWNLOAD] %s token=%s order=%s file=%s", result, prefix, target.order_id, target.storage_key)
        self._ledger.append(
            target.order_id,
            "download.completed",
            {
                "token_hash_prefix": prefix,
                "result": result,
                "filename": target.filename,
                "storage_key": target.storage_key,
                "stage_id": target.stage_id,
                "content_length": stream.content_length,
                "range_requested": range_header,
            },
            **audit,
        )

    def _deny(
        self,
        order_id: str,
        denied: DownloadDenied,
        prefix: str,
        audit: dict[str, Any],
        extra: dict[str, Any] | None = None,
    ) -> None:
        logger.warning("[DOWNLOAD] %s token=%s order=%s", denied.code, prefix, order_id)
        event_type = "download.denied_frozen" if denied.code == "DENIED_FROZEN" else "download.denied"
        self._ledger.append(
            order_id,
            event_type,
            {"token_hash_prefix": prefix, "result": denied.code, **(extra or {})},
            **audit,
        )
