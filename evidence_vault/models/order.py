"""Order models: the purchase, its snapshot, license and delivery stages."""

from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    LargeBinary,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from evidence_vault.db.base import Base
from evidence_vault.models.product import Product
from evidence_vault.models.terms import TermsVersion

ORDER_STATUSES = ("pending", "paid", "confirmed", "refunded", "disputed", "frozen", "revoked")
STAGE_STATUSES = ("pending", "ready", "delivered", "revoked")


class Order(Base):
    """One purchase transaction and the evidence attached to it."""

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    order_number: Mapped[str] = mapped_column(String(16), nullable=False)
    product_id: Mapped[str] = mapped_column(ForeignKey("products.id"), nullable=False)
    product_snapshot: Mapped[dict] = mapped_column(JSON, nullable=False)

    buyer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    buyer_email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    buyer_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    buyer_ip_encrypted: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    buyer_user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    buyer_country: Mapped[str | None] = mapped_column(String(64), nullable=True)
    buyer_city: Mapped[str | None] = mapped_column(String(128), nullable=True)

    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    # Payment status underneath the dispute-freeze overlay.
    frozen_from_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    provider_order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    provider_capture_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    provider_webhook_received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    download_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    download_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    downloads_expire_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    downloads_revoked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    delivery_package_key: Mapped[str | None] = mapped_column(String(500), nullable=True)

    evidence_frozen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    evidence_frozen_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    frozen_evidence_pdf_key: Mapped[str | None] = mapped_column(String(500), nullable=True)
    frozen_evidence_pdf_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    retention_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    terms_version_id: Mapped[int | None] = mapped_column(ForeignKey("terms_versions.id"), nullable=True)
    terms_accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    terms_accepted_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    terms_accepted_ip_encrypted: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    terms_accepted_ua: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    product: Mapped[Product] = relationship()
    terms_version: Mapped[TermsVersion | None] = relationship()
    events: Mapped[list["OrderEvent"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderEvent.sequence_number",
    )
    snapshots: Mapped[list["OrderSnapshot"]] = relationship(back_populates="order", cascade="all, delete-orphan")
    stages: Mapped[list["DeliveryStage"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="DeliveryStage.stage_order",
    )
    tokens: Mapped[list["DownloadToken"]] = relationship(back_populates="order", cascade="all, delete-orphan")
    license: Mapped["License | None"] = relationship(back_populates="order", cascade="all, delete-orphan", uselist=False)
    attachments: Mapped[list["EvidenceAttachment"]] = relationship(back_populates="order", cascade="all, delete-orphan")

    __table_args__ = (Index("uq_orders_order_number", "order_number", unique=True),)

    @property
    def payment_status(self) -> str:
        """Status ignoring the freeze overlay."""
        if self.status == "frozen":
            return self.frozen_from_status or "pending"
        return self.status


class OrderSnapshot(Base):
    """Immutable capture of the product as presented at purchase time."""

    __tablename__ = "order_snapshots"

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    snapshot_type: Mapped[str] = mapped_column(String(16), nullable=False, default="json")
    snapshot_json: Mapped[dict] = mapped_column(JSON, nullable=False)
    snapshot_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    order: Mapped[Order] = relationship(back_populates="snapshots")


class License(Base):
    """License key issued with an order."""

    __tablename__ = "licenses"

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), nullable=False, unique=True)
    product_id: Mapped[str] = mapped_column(String(36), nullable=False)
    license_key: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    buyer_email: Mapped[str] = mapped_column(String(255), nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    order: Mapped[Order] = relationship(back_populates="license")


class DeliveryStage(Base):
    """One separately releasable unit of a staged product."""

    __tablename__ = "delivery_stages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    stage_order: Mapped[int] = mapped_column(Integer, nullable=False)
    stage_type: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    storage_key: Mapped[str | None] = mapped_column(String(500), nullable=True)
    filename: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sha256_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    file_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    download_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    download_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    released_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    order: Mapped[Order] = relationship(back_populates="stages")

    __table_args__ = (Index("uq_delivery_stages_order_stage", "order_id", "stage_order", unique=True),)
