"""Manual sales and their one-time redemption into paid orders.

An operator records an off-checkout sale and sends the buyer a redeem
link. Redeeming accepts the active terms, creates a paid order with a
product snapshot, license, delivery stages and a first download token,
and writes the whole story to the order's ledger.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import or_, select, update
from sqlalchemy.orm import sessionmaker

from evidence_vault.core.config import Settings
from evidence_vault.core.crypto import (
    CryptoContext,
    generate_license_key,
    generate_order_number,
    mask_ip,
    random_hex,
    retention_expiry,
    sha256_hex,
)
from evidence_vault.models import License, ManualSale, Order, Product, TermsVersion
from evidence_vault.services.delivery import DeliveryStateMachine, Defer
from evidence_vault.services.errors import DeliveryError, NotFound, StateConflict, ValidationFailed
from evidence_vault.services.geoip import GeoIpResolver
from evidence_vault.services.ledger import EventLedger
from evidence_vault.services.settings_service import get_store_identity
from evidence_vault.services.snapshot import build_product_snapshot_data, create_product_snapshot
from evidence_vault.utils.time import days_from, is_past, iso_millis, utc_now

logger = logging.getLogger(__name__)

DEFAULT_REDEEM_EXPIRES_DAYS: int = 7


@dataclass
class CreatedManualSale:
    sale_id: str
    redeem_token: str
    redeem_url: str
    redeem_expires_at: datetime


@dataclass
class RedemptionResult:
    order_id: str
    order_number: str
    download_url: str
    license_key: str
    product_name: str
    expires_at: datetime
    download_limit: int


def mask_email(email: str) -> str:
    local, _, domain = email.partition("@")
    if not domain:
        return "***@***"
    visible = local[:1] if len(local) <= 2 else local[:2]
    return f"{visible}***@{domain}"


class RedemptionService:
    def __init__(
        self,
        session_factory: sessionmaker,
        ledger: EventLedger,
        delivery: DeliveryStateMachine,
        crypto: CryptoContext,
        geoip: GeoIpResolver,
        settings: Settings,
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger
        self._delivery = delivery
        self._crypto = crypto
        self._geoip = geoip
        self._settings = settings

    def create_manual_sale(
        self,
        *,
        product_id: str,
        buyer_email: str,
        created_by: str,
        buyer_name: str | None = None,
        amount: Decimal | None = None,
        currency: str = "USD",
        payment_method: str = "invoice",
        payment_ref: str | None = None,
        require_payment_first: bool = False,
        redeem_expires_days: int | None = None,
        max_redeems: int = 1,
    ) -> CreatedManualSale:
        if not buyer_email.strip():
            raise ValidationFailed("BUYER_EMAIL_REQUIRED", "buyerEmail is required")
        raw_token = random_hex(32)
        expires_at = days_from(utc_now(), redeem_expires_days or DEFAULT_REDEEM_EXPIRES_DAYS)
        with self._session_factory() as db:
            product = db.get(Product, product_id)
            if product is None:
                raise NotFound("PRODUCT_NOT_FOUND", "Product not found")
            sale = ManualSale(
                product_id=product.id,
                buyer_email=buyer_email.strip().lower(),
                buyer_name=buyer_name or None,
                amount=amount if amount is not None else product.price_usd,
                currency=currency,
                payment_method=payment_method,
                payment_ref=payment_ref,
                redeem_token_hash=self._crypto.redeem_hash(raw_token),
                redeem_expires_at=expires_at,
                max_redeems=max_redeems,
                require_payment_first=require_payment_first,
                status="sent" if require_payment_first else "paid",
                created_by=created_by,
            )
            db.add(sale)
            db.commit()
            sale_id = sale.id

        logger.info("[REDEEM] Manual sale %s created for %s by %s", sale_id, mask_email(buyer_email), created_by)
        return CreatedManualSale(
            sale_id=sale_id,
            redeem_token=raw_token,
            redeem_url=f"{self._settings.app_url.rstrip('/')}/redeem/{raw_token}",
            redeem_expires_at=expires_at,
        )

    def confirm(
        self,
        token: str,
        *,
        terms_accepted: bool,
        buyer_name: str | None = None,
        ip: str | None = None,
        user_agent: str | None = None,
        defer: Defer | None = None,
    ) -> RedemptionResult:
        if not token:
            raise ValidationFailed("TOKEN_REQUIRED", "Token is required")
        if not terms_accepted:
            raise ValidationFailed("TERMS_NOT_ACCEPTED", "Terms and conditions must be accepted")

        geo = self._geoip.resolve(ip)
        now = utc_now()
        token_hash = self._crypto.redeem_hash(token)

        with self._session_factory() as db:
            sale = db.scalars(select(ManualSale).where(ManualSale.redeem_token_hash == token_hash)).first()
            if sale is None:
                raise NotFound("REDEEM_NOT_FOUND", "Invalid redeem link")
            if sale.status == "canceled":
                raise StateConflict("REDEEM_CANCELED", "This sale was canceled", 410)
            if sale.redeem_count >= sale.max_redeems:
                raise StateConflict("REDEEM_USED", "This link was already used", 410)
            if is_past(sale.redeem_expires_at, now):
                sale.status = "expired"
                db.commit()
                raise StateConflict("REDEEM_EXPIRED", "This link has expired", 410)
            if sale.require_payment_first and sale.status == "sent":
                raise DeliveryError("PAYMENT_PENDING", "Payment has not been confirmed yet", 402)

            terms = db.scalars(
                select(TermsVersion).where(TermsVersion.is_active.is_(True)).order_by(TermsVersion.created_at.desc())
            ).first()
            if terms is None:
                raise DeliveryError("NO_ACTIVE_TERMS", "No active terms version", 500)

            claimed = db.execute(
                update(ManualSale)
                .where(
                    ManualSale.id == sale.id,
                    ManualSale.redeem_count < ManualSale.max_redeems,
                    or_(ManualSale.status == "paid", ManualSale.status == "sent", ManualSale.status == "redeemed"),
                )
                .values(redeem_count=ManualSale.redeem_count + 1, status="redeemed", redeemed_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount
            if claimed != 1:
                db.rollback()
                raise StateConflict("REDEEM_USED", "This link was already used", 410)

            product = sale.product
            snapshot_data = build_product_snapshot_data(product)
            name = (buyer_name or sale.buyer_name or "").strip() or None
            order = Order(
                order_number=generate_order_number(),
                product_id=product.id,
                product_snapshot=snapshot_data,
                buyer_name=name,
                buyer_email=sale.buyer_email,
                buyer_ip=mask_ip(ip),
                buyer_ip_encrypted=self._crypto.encrypt_ip(ip),
                buyer_user_agent=user_agent,
                buyer_country=geo.country,
                buyer_city=geo.city,
                amount=sale.amount,
                currency=sale.currency,
                status="paid",
                download_limit=product.download_limit,
                downloads_expire_at=days_from(now, product.download_expires_days),
                terms_version_id=terms.id,
                terms_accepted_at=now,
                terms_accepted_ip=mask_ip(ip),
                terms_accepted_ip_encrypted=self._crypto.encrypt_ip(ip),
                terms_accepted_ua=user_agent,
                retention_expires_at=retention_expiry(now, self._settings.retention_days),
                created_at=now,
            )
            db.add(order)
            db.flush()

            create_product_snapshot(db, order.id, snapshot_data)
            license_key = generate_license_key()
            fingerprint = sha256_hex(f"{order.id}|{product.id}|{sale.buyer_email}|{iso_millis(now)}")
            db.add(
                License(
                    order_id=order.id,
                    product_id=product.id,
                    license_key=license_key,
                    buyer_email=sale.buyer_email,
                    fingerprint=fingerprint,
                )
            )
            self._delivery.create_stages(db, order, product)
            issued = self._delivery.grant_initial_token(
                db, order, ttl_minutes=self._settings.redeem_token_ttl_minutes, source="redeem"
            )
            sale.order_id = order.id

            result = RedemptionResult(
                order_id=order.id,
                order_number=order.order_number,
                download_url=self._delivery.download_url(issued.raw_token),
                license_key=license_key,
                product_name=product.name,
                expires_at=issued.expires_at,
                download_limit=order.download_limit,
            )
            created_payload = {
                "order_number": order.order_number,
                "source": "manual_sale",
                "manual_sale_id": sale.id,
                "product_slug": product.slug,
                "product_name": product.name,
                "amount": str(sale.amount),
                "currency": sale.currency,
                "payment_method": sale.payment_method,
                "payment_ref": sale.payment_ref,
                "buyer_name": name,
                "buyer_country": geo.country,
                "buyer_city": geo.city,
            }
            terms_payload = {
                "terms_version_id": terms.id,
                "terms_version_label": terms.version_label,
                "terms_content_hash": terms.content_hash,
            }
            payment_payload = {
                "method": sale.payment_method,
                "payment_ref": sale.payment_ref,
                "manual_sale_id": sale.id,
                "amount": str(sale.amount),
                "currency": sale.currency,
            }
            payment_ref = f"manual:{sale.payment_ref}" if sale.payment_ref else f"manual_sale:{sale.id}"
            redeem_count = sale.redeem_count + 1
            mail_data = {
                "order_number": order.order_number,
                "product_name": product.name,
                "download_limit": order.download_limit,
                "license_key": license_key,
                **self._store_fields(db),
            }
            buyer_email = sale.buyer_email
            sale_id = sale.id
            db.commit()

        logger.info("[REDEEM] Sale %s redeemed as order %s", sale_id, result.order_number)
        audit = {"ip": ip, "user_agent": user_agent}
        order_id = result.order_id
        self._ledger.append(order_id, "order.created", created_payload, **audit)
        self._ledger.append(order_id, "terms.accepted", terms_payload, **audit)
        self._ledger.append(order_id, "payment.recorded", payment_payload, external_ref=payment_ref, **audit)
        self._ledger.append(order_id, "license.created", {"license_key": license_key, "fingerprint": fingerprint}, **audit)
        self._ledger.append(
            order_id,
            "download.token_generated",
            {"token_hash_prefix": issued.hash_prefix, "expires_at": iso_millis(issued.expires_at), "source": "redeem"},
            **audit,
        )
        self._ledger.append(order_id, "redeem.completed", {"manual_sale_id": sale_id, "redeem_count": redeem_count}, **audit)

        mail_data.update({"download_url": result.download_url, "expires_at": iso_millis(result.expires_at)})
        if defer is not None:
            defer(self._delivery.notify_buyer, order_id, "purchase", buyer_email, mail_data)
        else:
            self._delivery.notify_buyer(order_id, "purchase", buyer_email, mail_data)
        return result

    def _store_fields(self, db) -> dict[str, str]:
        identity = get_store_identity(db, defaults=self._settings)
        return {"store_name": identity.store_name, "support_email": identity.support_email}
