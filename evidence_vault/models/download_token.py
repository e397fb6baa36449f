"""Persisted half of a download capability."""

from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from evidence_vault.db.base import Base
from evidence_vault.models.order import Order


class DownloadToken(Base):
    """Stores only ``SHA256(raw_token)``; the raw token is never persisted."""

    __tablename__ = "download_tokens"

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    stage_id: Mapped[str | None] = mapped_column(ForeignKey("delivery_stages.id"), nullable=True)
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="checkout")
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    order: Mapped[Order] = relationship(back_populates="tokens")
