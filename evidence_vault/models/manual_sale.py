"""Manual (off-checkout) sales redeemed through a one-time link."""

from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from evidence_vault.db.base import Base
from evidence_vault.models.product import Product

MANUAL_SALE_STATUSES = ("sent", "paid", "redeemed", "canceled", "expired")


class ManualSale(Base):
    """Sale recorded by an operator; the buyer turns it into an order by redeeming."""

    __tablename__ = "manual_sales"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    product_id: Mapped[str] = mapped_column(ForeignKey("products.id"), nullable=False)
    buyer_email: Mapped[str] = mapped_column(String(255), nullable=False)
    buyer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    payment_method: Mapped[str] = mapped_column(String(32), nullable=False, default="invoice")
    payment_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    redeem_token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    redeem_expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    max_redeems: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    redeem_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    require_payment_first: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="sent")
    redeemed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    order_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    product: Mapped[Product] = relationship()
